"""
Session lifecycle controller.

Owns the single live SessionEngine, the tick job that drives it, and every
write to the session store. UI-facing commands are synchronous mutations of
the engine followed by a snapshot broadcast; start/end/abandon are async
because they talk to storage.

Usage:
    controller = StudySessionController(store, ticker=ApschedulerTicker(scheduler))
    await controller.start("book-1", SessionConfig())
    controller.report_activity()
    wrap_up = await controller.end()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from .broadcast import SnapshotBroadcaster
from .clock import Clock, SystemClock
from .engine import SessionEngine, SessionEvent, TickResult
from .errors import NoActiveSession, PersistenceFailure, SessionAlreadyActive
from .models import (
    SessionConfig,
    SessionSnapshot,
    SessionState,
    SessionStats,
    SessionStatus,
    WrapUp,
    format_duration,
)
from .store import SessionStore
from .ticker import TickHandle, TickScheduler
from .wrapup import DEFAULT_TOP_HIGHLIGHTS, WrapUpAssembler

logger = logging.getLogger(__name__)

TICK_INTERVAL_MS = 1000

# How long the "are you still there?" prompt waits before the session ends
AFK_PROMPT_TIMEOUT_MS = 60_000

# Tick events that trigger a progress checkpoint in the store
CHECKPOINT_EVENTS = frozenset({SessionEvent.PHASE_CHANGED, SessionEvent.AFK_STARTED})


@dataclass
class PendingWrite:
    """A finalize that failed and is waiting for retry_pending_writes()."""

    session_id: str
    stats: SessionStats | None
    status: SessionStatus
    ended_at: datetime
    attempts: int = 1


class StudySessionController:
    """Start/end/abandon plus command forwarding for one user's reading sessions."""

    def __init__(
        self,
        store: SessionStore,
        clock: Clock | None = None,
        ticker: TickScheduler | None = None,
        broadcaster: SnapshotBroadcaster | None = None,
        tick_interval_ms: int = TICK_INTERVAL_MS,
        top_highlights: int = DEFAULT_TOP_HIGHLIGHTS,
        afk_prompt_timeout_ms: int = AFK_PROMPT_TIMEOUT_MS,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ticker = ticker
        self.broadcaster = broadcaster or SnapshotBroadcaster()
        self.tick_interval_ms = tick_interval_ms
        # 0 leaves ending an AFK session to dismiss_afk_timeout()
        self.afk_prompt_timeout_ms = afk_prompt_timeout_ms
        self.wrap_up_assembler = WrapUpAssembler(store, top_highlights)

        self._engine: SessionEngine | None = None
        self._tick_handle: TickHandle | None = None
        self._afk_prompt_started_ms: int | None = None
        self._wrap_up: WrapUp | None = None
        self._pending_writes: list[PendingWrite] = []
        # One lock for lifecycle commands and store writes: at most one
        # outstanding write per session, never two lifecycle commands at once.
        self._lock = asyncio.Lock()

    # ---- Read-only properties ----

    @property
    def is_active(self) -> bool:
        return self._engine is not None and self._engine.is_live

    @property
    def state(self) -> SessionState:
        return self._engine.state if self._engine else SessionState.IDLE

    @property
    def session_id(self) -> str | None:
        return self._engine.session_id if self._engine else None

    @property
    def book_id(self) -> str | None:
        return self._engine.book_id if self._engine else None

    @property
    def pending_writes(self) -> list[PendingWrite]:
        return list(self._pending_writes)

    def snapshot(self) -> SessionSnapshot | None:
        if self._engine is None:
            return None
        return self._engine.snapshot(self.clock.now_ms())

    def get_wrap_up(self) -> WrapUp:
        if self._wrap_up is None:
            raise NoActiveSession("No completed session to wrap up")
        return self._wrap_up

    # ---- Lifecycle ----

    async def start(
        self,
        book_id: str,
        config: SessionConfig | None = None,
        microbreak_suppressed: bool = False,
    ) -> SessionSnapshot:
        config = config or SessionConfig()
        config.validate()

        async with self._lock:
            if self.is_active:
                raise SessionAlreadyActive(
                    f"Session {self._engine.session_id} is still {self._engine.state.value}"
                )

            started_at = self.clock.wall()
            try:
                session_id = await self.store.create_session_record(book_id, config, started_at)
            except Exception as e:
                logger.error(f"Failed to create session record for book {book_id}: {e}")
                raise PersistenceFailure(f"Could not create session record: {e}") from e

            self._engine = SessionEngine(
                session_id=session_id,
                book_id=book_id,
                config=config,
                now_mono_ms=self.clock.now_ms(),
                started_at=started_at,
                microbreak_suppressed=microbreak_suppressed,
            )
            self._wrap_up = None
            if self.ticker is not None:
                self._tick_handle = self.ticker.every(self.tick_interval_ms, self.tick)

        logger.info(
            f"Session {session_id[:8]} started for book {book_id} "
            f"({config.mode.value}, afk {config.afk_timeout_minutes}m)"
        )
        return self._publish(self._engine)

    async def end(self) -> WrapUp:
        """Complete the session and return its wrap-up.

        A failed final write does not fail end(): the wrap-up comes back with
        persisted=False and the write is queued for retry_pending_writes().
        """
        async with self._lock:
            engine = self._require_engine()
            result = engine.end(self.clock.now_ms())
            ended_at = self.clock.wall()
            self._discard_engine()
            self._log_events(engine, result)

            snapshot = engine.snapshot()
            stats = snapshot.stats
            error: str | None = None
            try:
                await self.store.finalize_session_record(
                    engine.session_id, stats, SessionStatus.COMPLETED, ended_at
                )
            except Exception as e:
                error = f"Failed to save session {engine.session_id}: {e}"
                logger.error(error)
                self._pending_writes.append(
                    PendingWrite(engine.session_id, stats, SessionStatus.COMPLETED, ended_at)
                )

            wrap_up = await self.wrap_up_assembler.assemble(snapshot, ended_at)
            wrap_up.persisted = error is None
            wrap_up.error = error
            self._wrap_up = wrap_up

        logger.info(
            f"Session {engine.session_id[:8]} completed: "
            f"{format_duration(stats.active_ms)} active, "
            f"{stats.completed_pomodoros} pomodoros, "
            f"{format_duration(stats.total_afk_ms)} AFK"
        )
        self.broadcaster.publish(snapshot)
        return wrap_up

    async def abandon(self) -> SessionSnapshot:
        """Drop the session. The record is marked abandoned, stats are not written."""
        async with self._lock:
            engine = self._require_engine()
            result = engine.abandon(self.clock.now_ms())
            ended_at = self.clock.wall()
            self._discard_engine()
            self._wrap_up = None
            self._log_events(engine, result)
            snapshot = engine.snapshot()
            self.broadcaster.publish(snapshot)

            try:
                await self.store.finalize_session_record(
                    engine.session_id, None, SessionStatus.ABANDONED, ended_at
                )
            except Exception as e:
                logger.error(f"Failed to mark session {engine.session_id} abandoned: {e}")
                raise PersistenceFailure(
                    f"Could not mark session abandoned: {e}", session_id=engine.session_id
                ) from e

        logger.info(f"Session {engine.session_id[:8]} abandoned")
        return snapshot

    async def dismiss_afk_timeout(self) -> WrapUp | None:
        """The AFK prompt went unanswered: end the session if it is still AFK."""
        engine = self._require_engine()
        if engine.state != SessionState.PAUSED_AFK:
            return None
        logger.info(f"Session {engine.session_id[:8]}: AFK prompt timed out, ending")
        return await self.end()

    async def dispose(self) -> None:
        """Host shutdown: complete a live session so its time is not lost."""
        if self.is_active:
            await self.end()
        self._release_ticker()

    async def retry_pending_writes(self) -> int:
        """Retry finalizes that failed earlier. Returns how many succeeded."""
        if not self._pending_writes:
            return 0
        flushed = 0
        async with self._lock:
            for pending in list(self._pending_writes):
                try:
                    await self.store.finalize_session_record(
                        pending.session_id, pending.stats, pending.status, pending.ended_at
                    )
                except Exception as e:
                    pending.attempts += 1
                    logger.warning(
                        f"Retry {pending.attempts} for session {pending.session_id} failed: {e}"
                    )
                    continue
                self._pending_writes.remove(pending)
                flushed += 1
                if self._wrap_up and self._wrap_up.snapshot.session_id == pending.session_id:
                    self._wrap_up.persisted = True
                    self._wrap_up.error = None
        if flushed:
            logger.info(f"Flushed {flushed} pending session write(s)")
        return flushed

    # ---- Tick ----

    async def tick(self) -> TickResult | None:
        """Tick job body. Safe to call with no session (no-op)."""
        engine = self._engine
        if engine is None:
            return None
        now = self.clock.now_ms()
        result = engine.tick(now)
        if SessionEvent.AFK_STARTED in result.events:
            self._afk_prompt_started_ms = now
        self._log_events(engine, result)
        self._publish(engine)
        if CHECKPOINT_EVENTS.intersection(result.events):
            await self._checkpoint(engine)
        if self._afk_prompt_expired(engine, now):
            try:
                await self.dismiss_afk_timeout()
            except NoActiveSession:
                # Ended by a command while the tick was running
                pass
        return result

    # ---- UI commands ----

    def report_activity(self) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(engine, engine.report_activity(self.clock.now_ms()))

    def confirm_presence(self) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(engine, engine.confirm_presence(self.clock.now_ms()))

    def skip_break(self) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(engine, engine.skip_break(self.clock.now_ms()))

    def microbreak_take(self) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(engine, engine.microbreak_take(self.clock.now_ms()))

    def microbreak_end(self) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(engine, engine.microbreak_end(self.clock.now_ms()))

    def microbreak_postpone(self) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(engine, engine.microbreak_postpone(self.clock.now_ms()))

    def microbreak_disable_today(self) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(engine, engine.microbreak_disable_today(self.clock.now_ms()))

    def set_microbreak_suppressed(self, suppressed: bool) -> SessionSnapshot:
        engine = self._require_engine()
        return self._apply(
            engine, engine.set_microbreak_suppressed(suppressed, self.clock.now_ms())
        )

    def record_highlight(self) -> SessionSnapshot:
        engine = self._require_engine()
        engine.record_highlight()
        return self._publish(engine)

    def record_note(self) -> SessionSnapshot:
        engine = self._require_engine()
        engine.record_note()
        return self._publish(engine)

    def record_page_view(self, words: int = 0) -> SessionSnapshot:
        engine = self._require_engine()
        engine.record_page_view(words)
        return self._publish(engine)

    # ---- Internal ----

    def _require_engine(self) -> SessionEngine:
        if self._engine is None or not self._engine.is_live:
            raise NoActiveSession("No active study session")
        return self._engine

    def _discard_engine(self) -> None:
        self._release_ticker()
        self._afk_prompt_started_ms = None
        self._engine = None

    def _release_ticker(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    def _afk_prompt_expired(self, engine: SessionEngine, now_ms: int) -> bool:
        if self.afk_prompt_timeout_ms <= 0 or self._afk_prompt_started_ms is None:
            return False
        if engine is not self._engine or engine.state != SessionState.PAUSED_AFK:
            return False
        return now_ms - self._afk_prompt_started_ms >= self.afk_prompt_timeout_ms

    def _apply(self, engine: SessionEngine, result: TickResult) -> SessionSnapshot:
        self._log_events(engine, result)
        return self._publish(engine)

    def _publish(self, engine: SessionEngine) -> SessionSnapshot:
        snapshot = engine.snapshot(self.clock.now_ms())
        self.broadcaster.publish(snapshot)
        return snapshot

    def _log_events(self, engine: SessionEngine, result: TickResult) -> None:
        sid = engine.session_id[:8]
        for event in result.events:
            if event == SessionEvent.PHASE_CHANGED:
                logger.info(
                    f"Session {sid}: {result.old_phase.value if result.old_phase else '?'}"
                    f" -> {engine.phase.value}"
                )
            elif event in (SessionEvent.COMPLETED, SessionEvent.ABANDONED):
                continue
            else:
                logger.info(f"Session {sid}: {event.value}")

    async def _checkpoint(self, engine: SessionEngine) -> None:
        """Write running stats so a crash mid-session keeps partial progress.

        Saves the snapshot stats, so an AFK stretch still in progress is
        recorded as AFK rather than dropped.
        """
        async with self._lock:
            if engine is not self._engine or not engine.is_live:
                return
            stats = engine.snapshot(self.clock.now_ms()).stats
            try:
                await self.store.update_session_record(engine.session_id, stats.to_dict())
            except Exception as e:
                logger.warning(f"Checkpoint for session {engine.session_id[:8]} failed: {e}")
