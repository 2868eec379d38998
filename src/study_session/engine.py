"""Study session engine: pure logic, no I/O.

All time values are integer milliseconds from a monotonic clock, passed in
via now_mono_ms parameters for deterministic testing. One engine instance
lives for exactly one session; a new session always gets a new engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .errors import NoActiveSession
from .models import (
    MS_PER_MINUTE,
    SessionConfig,
    SessionPhase,
    SessionSnapshot,
    SessionState,
    SessionStats,
)

# "Remind me again in 5 minutes", whatever the configured interval is.
MICROBREAK_POSTPONE_MS = 5 * MS_PER_MINUTE

LIVE_STATES = (SessionState.RUNNING, SessionState.PAUSED_AFK)


class SessionEvent(Enum):
    AFK_STARTED = "afk_started"
    AFK_ENDED = "afk_ended"
    PHASE_CHANGED = "phase_changed"
    POMODORO_COMPLETED = "pomodoro_completed"
    MICROBREAK_DUE = "microbreak_due"
    MICROBREAK_STARTED = "microbreak_started"
    MICROBREAK_ENDED = "microbreak_ended"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class TickResult:
    events: list[SessionEvent] = field(default_factory=list)
    old_phase: SessionPhase | None = None
    elapsed_ms: int = 0


class SessionEngine:
    """State machine, stats accumulator and microbreak scheduler for one session.

    Pure computation: callers own the clock, the tick driver and persistence.
    """

    def __init__(
        self,
        session_id: str,
        book_id: str,
        config: SessionConfig,
        now_mono_ms: int,
        started_at: datetime,
        microbreak_suppressed: bool = False,
    ):
        config.validate()
        self._session_id = session_id
        self._book_id = book_id
        self._config = config
        self._started_at = started_at

        self._state: SessionState = SessionState.RUNNING
        self._phase: SessionPhase = (
            SessionPhase.WORK if config.pomodoro else SessionPhase.IDLE
        )
        self._stats = SessionStats()

        self._last_tick_ms: int = now_mono_ms
        self._phase_elapsed_ms: int = 0

        # AFK detection
        self._last_activity_ms: int = now_mono_ms
        self._afk_started_ms: int | None = None
        # Active time charged since the last activity signal; moved out of
        # active_ms if that quiet stretch turns out to be an AFK window.
        self._unconfirmed_active_ms: int = 0

        # Microbreak
        self._last_microbreak_ms: int = now_mono_ms
        self._microbreak_due: bool = False
        self._microbreak_active: bool = False
        self._microbreak_suppressed: bool = microbreak_suppressed

    # ---- Read-only properties ----

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def book_id(self) -> str:
        return self._book_id

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_live(self) -> bool:
        return self._state in LIVE_STATES

    @property
    def stats(self) -> SessionStats:
        """Copy of the committed stats (pending AFK time not included)."""
        return self._stats.copy()

    @property
    def phase_elapsed_ms(self) -> int:
        return self._phase_elapsed_ms

    @property
    def microbreak_due(self) -> bool:
        return self._microbreak_due

    @property
    def microbreak_active(self) -> bool:
        return self._microbreak_active

    @property
    def microbreak_suppressed(self) -> bool:
        return self._microbreak_suppressed

    @property
    def afk_started_ms(self) -> int | None:
        return self._afk_started_ms

    # ---- Core methods ----

    def tick(self, now_mono_ms: int) -> TickResult:
        """Advance the session to now_mono_ms.

        Elapsed time is measured against the previous tick, so a late or
        coalesced callback (system sleep, event loop stall) still accounts
        for the full wall-clock gap.
        """
        result = TickResult()
        if self.is_live:
            self._advance(now_mono_ms, result)
        return result

    def report_activity(self, now_mono_ms: int) -> TickResult:
        """Coalesced pointer/keyboard/scroll signal from the UI."""
        self._require_live()
        result = TickResult()
        self._mark_activity(now_mono_ms)
        if self._state == SessionState.PAUSED_AFK:
            self._resume_from_afk(now_mono_ms, result)
        return result

    def confirm_presence(self, now_mono_ms: int) -> TickResult:
        """User answered the AFK prompt."""
        return self.report_activity(now_mono_ms)

    def skip_break(self, now_mono_ms: int) -> TickResult:
        self._require_live()
        result = TickResult()
        if self._phase != SessionPhase.BREAK:
            return result
        self._advance(now_mono_ms, result)
        if self._phase == SessionPhase.BREAK:
            self._enter_work(now_mono_ms, result)
        return result

    def microbreak_take(self, now_mono_ms: int) -> TickResult:
        self._require_live()
        result = TickResult()
        if self._microbreak_active:
            return result
        self._advance(now_mono_ms, result)
        if self._state != SessionState.RUNNING or self._phase == SessionPhase.BREAK:
            return result
        self._mark_activity(now_mono_ms)
        self._microbreak_due = False
        self._microbreak_active = True
        result.events.append(SessionEvent.MICROBREAK_STARTED)
        return result

    def microbreak_end(self, now_mono_ms: int) -> TickResult:
        self._require_live()
        result = TickResult()
        if not self._microbreak_active:
            return result
        self._advance(now_mono_ms, result)
        self._finish_microbreak(now_mono_ms, result)
        return result

    def microbreak_postpone(self, now_mono_ms: int) -> TickResult:
        self._require_live()
        self._microbreak_due = False
        self._last_microbreak_ms = now_mono_ms - (
            self._config.microbreak_interval_ms - MICROBREAK_POSTPONE_MS
        )
        return TickResult()

    def microbreak_disable_today(self, now_mono_ms: int) -> TickResult:
        self._require_live()
        result = TickResult()
        if self._microbreak_active:
            self._advance(now_mono_ms, result)
            self._finish_microbreak(now_mono_ms, result)
        self._microbreak_suppressed = True
        self._microbreak_due = False
        return result

    def set_microbreak_suppressed(self, suppressed: bool, now_mono_ms: int) -> TickResult:
        """Caller-owned "disabled today" flag; cleared by the caller on date rollover."""
        if suppressed:
            return self.microbreak_disable_today(now_mono_ms)
        self._require_live()
        self._microbreak_suppressed = False
        return TickResult()

    def record_highlight(self) -> None:
        self._require_live()
        self._stats.highlights_during += 1

    def record_note(self) -> None:
        self._require_live()
        self._stats.notes_during += 1

    def record_page_view(self, words: int = 0) -> None:
        self._require_live()
        self._stats.pages_viewed += 1
        self._stats.words_read_estimate += max(0, words)

    def end(self, now_mono_ms: int) -> TickResult:
        """Finalize: reconcile up to now, flush pending AFK, go terminal."""
        self._require_live()
        result = TickResult()
        self._advance(now_mono_ms, result)
        if self._afk_started_ms is not None:
            self._stats.total_afk_ms += max(0, now_mono_ms - self._afk_started_ms)
            self._afk_started_ms = None
        self._microbreak_active = False
        self._microbreak_due = False
        self._state = SessionState.COMPLETED
        self._phase = SessionPhase.IDLE
        result.events.append(SessionEvent.COMPLETED)
        return result

    def abandon(self, now_mono_ms: int) -> TickResult:
        """Go terminal without finalizing stats."""
        self._require_live()
        self._last_tick_ms = max(self._last_tick_ms, now_mono_ms)
        self._microbreak_active = False
        self._microbreak_due = False
        self._state = SessionState.ABANDONED
        self._phase = SessionPhase.IDLE
        return TickResult(events=[SessionEvent.ABANDONED])

    def snapshot(self, now_mono_ms: int | None = None) -> SessionSnapshot:
        """Read-only projection. Pending AFK time is included in total_afk_ms."""
        now = self._last_tick_ms if now_mono_ms is None else now_mono_ms
        stats = self._stats.copy()
        if self._afk_started_ms is not None:
            stats.total_afk_ms += max(0, now - self._afk_started_ms)

        remaining: int | None = None
        if self._config.pomodoro and self._phase == SessionPhase.WORK:
            remaining = max(0, self._config.work_ms - self._phase_elapsed_ms)
        elif self._config.pomodoro and self._phase == SessionPhase.BREAK:
            remaining = max(0, self._config.break_ms - self._phase_elapsed_ms)

        return SessionSnapshot(
            session_id=self._session_id,
            book_id=self._book_id,
            state=self._state,
            phase=self._phase,
            mode=self._config.mode,
            active_ms=stats.active_ms,
            phase_elapsed_ms=self._phase_elapsed_ms,
            phase_remaining_ms=remaining,
            stats=stats,
            microbreak_due=self._microbreak_due,
            microbreak_active=self._microbreak_active,
            microbreak_suppressed=self._microbreak_suppressed,
            started_at=self._started_at,
            config=self._config,
        )

    # ---- Internal ----

    def _require_live(self) -> None:
        if not self.is_live:
            raise NoActiveSession(f"Session {self._session_id} is {self._state.value}")

    def _mark_activity(self, now_mono_ms: int) -> None:
        self._last_activity_ms = now_mono_ms
        self._unconfirmed_active_ms = 0

    def _advance(self, now_mono_ms: int, result: TickResult) -> None:
        """Charge elapsed time since the last tick, then evaluate transitions.

        Order within one tick: AFK check, phase boundary, microbreak.
        """
        elapsed_ms = now_mono_ms - self._last_tick_ms
        if elapsed_ms <= 0:
            return
        self._last_tick_ms = now_mono_ms
        result.elapsed_ms += elapsed_ms

        # PAUSED_AFK: the AFK window is charged from _afk_started_ms on resume/end
        if self._state != SessionState.RUNNING:
            return

        if self._microbreak_active:
            self._stats.total_microbreak_ms += elapsed_ms
            return

        if self._phase == SessionPhase.BREAK:
            # AFK detection is suspended during breaks
            self._stats.total_break_ms += elapsed_ms
            self._phase_elapsed_ms += elapsed_ms
            if self._phase_elapsed_ms >= self._config.break_ms:
                self._enter_work(now_mono_ms, result)
            return

        idle_ms = now_mono_ms - self._last_activity_ms
        if idle_ms >= self._config.afk_timeout_ms:
            self._enter_afk(now_mono_ms, idle_ms, result)
            return

        self._stats.active_ms += elapsed_ms
        self._phase_elapsed_ms += elapsed_ms
        self._unconfirmed_active_ms += min(elapsed_ms, idle_ms)

        if self._config.pomodoro and self._phase_elapsed_ms >= self._config.work_ms:
            self._stats.completed_pomodoros += 1
            result.events.append(SessionEvent.POMODORO_COMPLETED)
            self._enter_break(now_mono_ms, result)
            return

        self._check_microbreak(now_mono_ms, result)

    def _enter_afk(self, now_mono_ms: int, idle_ms: int, result: TickResult) -> None:
        # Back-date the AFK window to the last activity; the quiet stretch
        # already charged as active time moves to total_afk_ms instead.
        retract = min(self._unconfirmed_active_ms, self._stats.active_ms)
        self._stats.active_ms -= retract
        self._phase_elapsed_ms = max(0, self._phase_elapsed_ms - retract)
        self._unconfirmed_active_ms = 0

        self._afk_started_ms = now_mono_ms - idle_ms
        self._state = SessionState.PAUSED_AFK
        self._microbreak_due = False
        result.events.append(SessionEvent.AFK_STARTED)

    def _resume_from_afk(self, now_mono_ms: int, result: TickResult) -> None:
        if self._afk_started_ms is not None:
            self._stats.total_afk_ms += max(0, now_mono_ms - self._afk_started_ms)
        self._afk_started_ms = None
        self._state = SessionState.RUNNING
        self._last_tick_ms = max(self._last_tick_ms, now_mono_ms)
        # Time away counts as a rest for microbreak purposes
        self._last_microbreak_ms = now_mono_ms
        result.events.append(SessionEvent.AFK_ENDED)

    def _enter_break(self, now_mono_ms: int, result: TickResult) -> None:
        result.old_phase = self._phase
        self._phase = SessionPhase.BREAK
        self._phase_elapsed_ms = 0
        self._microbreak_due = False
        result.events.append(SessionEvent.PHASE_CHANGED)

    def _enter_work(self, now_mono_ms: int, result: TickResult) -> None:
        result.old_phase = self._phase
        self._phase = SessionPhase.WORK
        self._phase_elapsed_ms = 0
        self._last_microbreak_ms = now_mono_ms
        self._mark_activity(now_mono_ms)
        result.events.append(SessionEvent.PHASE_CHANGED)

    def _finish_microbreak(self, now_mono_ms: int, result: TickResult) -> None:
        self._microbreak_active = False
        self._last_microbreak_ms = now_mono_ms
        self._mark_activity(now_mono_ms)
        result.events.append(SessionEvent.MICROBREAK_ENDED)

    def _check_microbreak(self, now_mono_ms: int, result: TickResult) -> None:
        interval_ms = self._config.microbreak_interval_ms
        if interval_ms <= 0 or self._microbreak_suppressed or self._microbreak_due:
            return
        if now_mono_ms - self._last_microbreak_ms >= interval_ms:
            self._microbreak_due = True
            result.events.append(SessionEvent.MICROBREAK_DUE)
