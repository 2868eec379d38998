#!/usr/bin/env python3
"""Study session CLI.

Usage:
    study-session serve                  # Run the local session API
    study-session init-db                # Create the SQLite schema
    study-session status                 # Live session, from the running server
    study-session history --book BOOK    # Recent sessions from the database
    study-session stats --book BOOK      # Totals and reading speed
"""

from __future__ import annotations

import asyncio
import sys

import click
import requests
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import Settings
from .models import SessionRecord, SessionStatus, format_duration
from .store import SqliteSessionStore

console = Console()

REQUEST_TIMEOUT = 5


def _status_style(status: SessionStatus) -> str:
    styles = {
        SessionStatus.ACTIVE: "bold green",
        SessionStatus.COMPLETED: "cyan",
        SessionStatus.ABANDONED: "dim",
    }
    return styles.get(status, "white")


def words_per_minute(words: int, active_ms: int) -> float | None:
    """Reading speed over active time; None when there is no active time."""
    if active_ms <= 0:
        return None
    return words / (active_ms / 60_000)


def _load_sessions(settings: Settings, book_id: str | None, limit: int) -> list[SessionRecord]:
    store = SqliteSessionStore(settings.db_path)
    return asyncio.run(store.list_sessions(book_id=book_id, limit=limit))


@click.group()
@click.pass_context
def cli(ctx):
    """Study session engine - Pomodoro, AFK and microbreak tracking for readers."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.option("--host", default=None, help="Bind address (default: STUDY_SESSION_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: STUDY_SESSION_PORT)")
@click.pass_context
def serve(ctx, host, port):
    """Run the session API server."""
    import uvicorn

    from .api import create_app

    settings: Settings = ctx.obj["settings"]
    if host:
        settings.host = host
    if port:
        settings.port = port
    console.print(f"[green]Study session API on {settings.base_url}[/green]")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the session database schema."""
    settings: Settings = ctx.obj["settings"]
    asyncio.run(SqliteSessionStore(settings.db_path).init_db())
    console.print(f"[green]Database ready:[/green] {settings.db_path}")


@cli.command()
@click.pass_context
def status(ctx):
    """Show the live session from the running server."""
    settings: Settings = ctx.obj["settings"]
    try:
        response = requests.get(f"{settings.base_url}/api/session/state", timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        console.print(f"[red]Server unreachable at {settings.base_url}: {e}[/red]")
        sys.exit(1)

    snapshot = response.json()
    if not snapshot:
        console.print("[dim]No active session[/dim]")
        return

    stats = snapshot["stats"]
    lines = [
        f"Book:      {snapshot['book_id']}",
        f"State:     {snapshot['state']}  ({snapshot['mode']}, {snapshot['phase']})",
        f"Active:    {format_duration(snapshot['active_ms'])}",
    ]
    if snapshot["phase_remaining_ms"] is not None:
        lines.append(f"Remaining: {format_duration(snapshot['phase_remaining_ms'])}")
    lines += [
        f"Pomodoros: {stats['completed_pomodoros']}",
        f"AFK:       {format_duration(stats['total_afk_ms'])}",
        f"Breaks:    {format_duration(stats['total_break_ms'] + stats['total_microbreak_ms'])}",
        f"Notes:     {stats['highlights_during']} highlights, {stats['notes_during']} notes",
    ]
    if snapshot["microbreak_due"]:
        lines.append("[yellow]Microbreak due[/yellow]")
    console.print(Panel("\n".join(lines), title=f"Session {snapshot['session_id'][:8]}"))


@cli.command()
@click.option("--book", "book_id", default=None, help="Only sessions for this book")
@click.option("--limit", default=20, show_default=True, help="Max sessions to show")
@click.pass_context
def history(ctx, book_id, limit):
    """List recent sessions, newest first."""
    records = _load_sessions(ctx.obj["settings"], book_id, limit)
    if not records:
        console.print("[yellow]No sessions found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Started", style="dim", width=16)
    table.add_column("Book")
    table.add_column("Mode", width=8)
    table.add_column("Status", width=10)
    table.add_column("Active", justify="right")
    table.add_column("AFK", justify="right")
    table.add_column("Pomodoros", justify="right")
    table.add_column("Highlights", justify="right")

    for record in records:
        table.add_row(
            record.start_time.astimezone().strftime("%Y-%m-%d %H:%M"),
            record.book_id,
            record.mode.value,
            Text(record.status.value, style=_status_style(record.status)),
            format_duration(record.stats.active_ms),
            format_duration(record.stats.total_afk_ms),
            str(record.stats.completed_pomodoros),
            str(record.stats.highlights_during),
        )
    console.print(table)


@cli.command()
@click.option("--book", "book_id", default=None, help="Only sessions for this book")
@click.option("--limit", default=1000, show_default=True, help="Max sessions to include")
@click.pass_context
def stats(ctx, book_id, limit):
    """Totals across completed sessions."""
    records = [
        r
        for r in _load_sessions(ctx.obj["settings"], book_id, limit)
        if r.status == SessionStatus.COMPLETED
    ]
    if not records:
        console.print("[yellow]No completed sessions.[/yellow]")
        return

    active_ms = sum(r.stats.active_ms for r in records)
    words = sum(r.stats.words_read_estimate for r in records)
    wpm = words_per_minute(words, active_ms)

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Sessions", str(len(records)))
    table.add_row("Active time", format_duration(active_ms))
    table.add_row("AFK time", format_duration(sum(r.stats.total_afk_ms for r in records)))
    table.add_row("Pomodoros", str(sum(r.stats.completed_pomodoros for r in records)))
    table.add_row("Pages viewed", str(sum(r.stats.pages_viewed for r in records)))
    table.add_row("Highlights", str(sum(r.stats.highlights_during for r in records)))
    table.add_row("Notes", str(sum(r.stats.notes_during for r in records)))
    table.add_row("Words per minute", f"{wpm:.0f}" if wpm is not None else "-")
    title = f"Reading stats: {book_id}" if book_id else "Reading stats"
    console.print(Panel(table, title=title))


if __name__ == "__main__":
    cli()
