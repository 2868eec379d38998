"""Session storage: the persistence collaborator and its SQLite implementation.

The controller only needs the four SessionStore operations. SqliteSessionStore
also carries the history/highlight queries used by the HTTP API and the CLI.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Protocol

import aiosqlite

from .models import (
    Highlight,
    SessionConfig,
    SessionMode,
    SessionRecord,
    SessionStats,
    SessionStatus,
)

logger = logging.getLogger(__name__)

STAT_COLUMNS = (
    "active_ms",
    "total_afk_ms",
    "total_break_ms",
    "total_microbreak_ms",
    "completed_pomodoros",
    "highlights_during",
    "notes_during",
    "pages_viewed",
    "words_read_estimate",
)

# Columns update_session_record() may touch
PATCHABLE_COLUMNS = frozenset(STAT_COLUMNS + ("status", "end_time"))


def _iso(value: datetime) -> str:
    """UTC ISO-8601, so string comparison in SQL matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore(Protocol):
    async def create_session_record(
        self, book_id: str, config: SessionConfig, started_at: datetime
    ) -> str:
        ...

    async def update_session_record(self, session_id: str, patch: dict) -> None:
        ...

    async def finalize_session_record(
        self,
        session_id: str,
        stats: SessionStats | None,
        status: SessionStatus,
        ended_at: datetime,
    ) -> None:
        ...

    async def query_highlights(
        self, book_id: str, since: datetime, until: datetime, limit: int = 3
    ) -> list[Highlight]:
        ...


class SqliteSessionStore:
    """SessionStore on a local SQLite file via aiosqlite."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            # busy_timeout prevents indefinite blocking on lock contention
            await db.execute("PRAGMA busy_timeout=5000")
            db.row_factory = aiosqlite.Row
            yield db

    # ── DB Schema ──────────────────────────────────────────────

    async def init_db(self) -> None:
        """Create tables and indexes. Safe to call on every startup."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    book_id TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    work_minutes INTEGER NOT NULL,
                    break_minutes INTEGER NOT NULL,
                    afk_timeout_minutes INTEGER NOT NULL,
                    microbreak_interval_minutes INTEGER NOT NULL DEFAULT 0,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    active_ms INTEGER DEFAULT 0,
                    total_afk_ms INTEGER DEFAULT 0,
                    total_break_ms INTEGER DEFAULT 0,
                    total_microbreak_ms INTEGER DEFAULT 0,
                    completed_pomodoros INTEGER DEFAULT 0,
                    highlights_during INTEGER DEFAULT 0,
                    notes_during INTEGER DEFAULT 0,
                    pages_viewed INTEGER DEFAULT 0,
                    words_read_estimate INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS highlights (
                    id TEXT PRIMARY KEY,
                    book_id TEXT NOT NULL,
                    cfi_range TEXT NOT NULL,
                    text TEXT NOT NULL,
                    color TEXT NOT NULL DEFAULT 'yellow',
                    chapter TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_book_id ON sessions(book_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_start_time ON sessions(start_time DESC)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_highlights_book_time "
                "ON highlights(book_id, created_at DESC)"
            )
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # ── SessionStore ───────────────────────────────────────────

    async def create_session_record(
        self, book_id: str, config: SessionConfig, started_at: datetime
    ) -> str:
        session_id = str(uuid.uuid4())
        now = _now_iso()
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO sessions (
                       id, book_id, mode, status,
                       work_minutes, break_minutes, afk_timeout_minutes,
                       microbreak_interval_minutes, start_time,
                       created_at, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session_id,
                    book_id,
                    config.mode.value,
                    SessionStatus.ACTIVE.value,
                    config.work_minutes,
                    config.break_minutes,
                    config.afk_timeout_minutes,
                    config.microbreak_interval_minutes,
                    _iso(started_at),
                    now,
                    now,
                ),
            )
            await db.commit()
        return session_id

    async def update_session_record(self, session_id: str, patch: dict) -> None:
        unknown = set(patch) - PATCHABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot patch session columns: {sorted(unknown)}")
        if not patch:
            return

        values = []
        for key, value in patch.items():
            if isinstance(value, SessionStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = _iso(value)
            values.append(value)
        assignments = ", ".join(f"{key} = ?" for key in patch)

        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE sessions SET {assignments}, updated_at = ? WHERE id = ?",
                (*values, _now_iso(), session_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise KeyError(f"Unknown session {session_id}")

    async def finalize_session_record(
        self,
        session_id: str,
        stats: SessionStats | None,
        status: SessionStatus,
        ended_at: datetime,
    ) -> None:
        patch: dict = {"status": status, "end_time": ended_at}
        if stats is not None:
            patch.update(stats.to_dict())
        await self.update_session_record(session_id, patch)

    async def query_highlights(
        self, book_id: str, since: datetime, until: datetime, limit: int = 3
    ) -> list[Highlight]:
        """Highlights for a book created in [since, until], newest first."""
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT * FROM highlights
                   WHERE book_id = ? AND created_at >= ? AND created_at <= ?
                   ORDER BY created_at DESC
                   LIMIT ?""",
                (book_id, _iso(since), _iso(until), limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_highlight(row) for row in rows]

    # ── Highlights ─────────────────────────────────────────────

    async def add_highlight(
        self,
        book_id: str,
        text: str,
        cfi_range: str,
        color: str = "yellow",
        chapter: str | None = None,
        created_at: datetime | None = None,
    ) -> Highlight:
        highlight = Highlight(
            id=str(uuid.uuid4()),
            book_id=book_id,
            text=text,
            color=color,
            cfi_range=cfi_range,
            chapter=chapter,
            created_at=created_at or datetime.now(timezone.utc),
        )
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO highlights (id, book_id, cfi_range, text, color, chapter, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    highlight.id,
                    highlight.book_id,
                    highlight.cfi_range,
                    highlight.text,
                    highlight.color,
                    highlight.chapter,
                    _iso(highlight.created_at),
                ),
            )
            await db.commit()
        return highlight

    # ── History ────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> SessionRecord | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def list_sessions(
        self,
        book_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
    ) -> list[SessionRecord]:
        """Sessions newest first, optionally filtered by book and start-time range."""
        clauses = []
        params: list = []
        if book_id:
            clauses.append("book_id = ?")
            params.append(book_id)
        if since:
            clauses.append("start_time >= ?")
            params.append(_iso(since))
        if until:
            clauses.append("start_time <= ?")
            params.append(_iso(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM sessions {where} ORDER BY start_time DESC LIMIT ?",
                params,
            )
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_highlight(row: aiosqlite.Row) -> Highlight:
    return Highlight(
        id=row["id"],
        book_id=row["book_id"],
        text=row["text"],
        color=row["color"],
        cfi_range=row["cfi_range"],
        chapter=row["chapter"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_record(row: aiosqlite.Row) -> SessionRecord:
    return SessionRecord(
        id=row["id"],
        book_id=row["book_id"],
        mode=SessionMode(row["mode"]),
        work_minutes=row["work_minutes"],
        break_minutes=row["break_minutes"],
        afk_timeout_minutes=row["afk_timeout_minutes"],
        microbreak_interval_minutes=row["microbreak_interval_minutes"],
        status=SessionStatus(row["status"]),
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=_parse_ts(row["end_time"]),
        stats=SessionStats(**{col: row[col] or 0 for col in STAT_COLUMNS}),
    )
