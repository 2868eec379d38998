"""Value types shared by the engine, the controller and the storage layer.

All durations are integer milliseconds. Timestamps that leave the engine
(start/end of a session, highlight creation) are timezone-aware datetimes.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum

from .errors import InvalidConfig

MS_PER_MINUTE = 60 * 1000


class SessionMode(str, Enum):
    POMODORO = "pomodoro"
    FREE = "free"


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED_AFK = "paused_afk"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SessionPhase(str, Enum):
    WORK = "work"
    BREAK = "break"
    # Free-mode reading, and "no session" outside a session.
    IDLE = "idle"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


def format_duration(ms: int) -> str:
    """Format milliseconds as '25 min', '1h 5min' or '2h'."""
    total_minutes = round(ms / MS_PER_MINUTE)
    if total_minutes < 60:
        return f"{total_minutes} min"
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}min" if minutes else f"{hours}h"


@dataclass(frozen=True)
class SessionConfig:
    """Immutable per-session configuration.

    ``work_minutes``/``break_minutes`` only matter in Pomodoro mode.
    ``microbreak_interval_minutes == 0`` disables microbreak reminders.
    """

    mode: SessionMode = SessionMode.POMODORO
    work_minutes: int = 25
    break_minutes: int = 5
    afk_timeout_minutes: int = 5
    microbreak_interval_minutes: int = 20

    def validate(self) -> None:
        if self.afk_timeout_minutes <= 0:
            raise InvalidConfig(
                f"afk_timeout_minutes must be > 0, got {self.afk_timeout_minutes}"
            )
        if self.mode == SessionMode.POMODORO:
            if self.work_minutes <= 0:
                raise InvalidConfig(f"work_minutes must be > 0, got {self.work_minutes}")
            if self.break_minutes <= 0:
                raise InvalidConfig(f"break_minutes must be > 0, got {self.break_minutes}")
        if self.microbreak_interval_minutes < 0:
            raise InvalidConfig(
                "microbreak_interval_minutes must be >= 0, "
                f"got {self.microbreak_interval_minutes}"
            )

    @property
    def pomodoro(self) -> bool:
        return self.mode == SessionMode.POMODORO

    @property
    def work_ms(self) -> int:
        return self.work_minutes * MS_PER_MINUTE

    @property
    def break_ms(self) -> int:
        return self.break_minutes * MS_PER_MINUTE

    @property
    def afk_timeout_ms(self) -> int:
        return self.afk_timeout_minutes * MS_PER_MINUTE

    @property
    def microbreak_interval_ms(self) -> int:
        return self.microbreak_interval_minutes * MS_PER_MINUTE


@dataclass
class SessionStats:
    active_ms: int = 0
    total_afk_ms: int = 0
    total_break_ms: int = 0
    total_microbreak_ms: int = 0
    completed_pomodoros: int = 0
    highlights_during: int = 0
    notes_during: int = 0
    pages_viewed: int = 0
    words_read_estimate: int = 0

    @property
    def accounted_ms(self) -> int:
        """Wall-clock time accounted for by the four time buckets."""
        return (
            self.active_ms
            + self.total_afk_ms
            + self.total_break_ms
            + self.total_microbreak_ms
        )

    def copy(self) -> SessionStats:
        return replace(self)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only projection of one session, re-emitted after every mutation."""

    session_id: str
    book_id: str
    state: SessionState
    phase: SessionPhase
    mode: SessionMode
    active_ms: int
    phase_elapsed_ms: int
    phase_remaining_ms: int | None
    stats: SessionStats
    microbreak_due: bool
    microbreak_active: bool
    microbreak_suppressed: bool
    started_at: datetime
    config: SessionConfig

    @property
    def timer_seconds(self) -> int:
        return self.active_ms // 1000

    def to_dict(self) -> dict:
        """Serialize with snake_case keys (HTTP/JSON)."""
        return {
            "session_id": self.session_id,
            "book_id": self.book_id,
            "state": self.state.value,
            "phase": self.phase.value,
            "mode": self.mode.value,
            "active_ms": self.active_ms,
            "timer_seconds": self.timer_seconds,
            "phase_elapsed_ms": self.phase_elapsed_ms,
            "phase_remaining_ms": self.phase_remaining_ms,
            "stats": self.stats.to_dict(),
            "microbreak_due": self.microbreak_due,
            "microbreak_active": self.microbreak_active,
            "microbreak_suppressed": self.microbreak_suppressed,
            "started_at": self.started_at.isoformat(),
            "config": {
                "mode": self.config.mode.value,
                "work_minutes": self.config.work_minutes,
                "break_minutes": self.config.break_minutes,
                "afk_timeout_minutes": self.config.afk_timeout_minutes,
                "microbreak_interval_minutes": self.config.microbreak_interval_minutes,
            },
        }

    def to_export_dict(self) -> dict:
        """CamelCase dict in seconds, for reader front-ends."""
        remaining = self.phase_remaining_ms
        return {
            "sessionId": self.session_id,
            "bookId": self.book_id,
            "state": self.state.value,
            "phase": self.phase.value,
            "pomodoroEnabled": self.mode == SessionMode.POMODORO,
            "timerSeconds": self.timer_seconds,
            "pomodoroRemainingSeconds": -(-remaining // 1000) if remaining else 0,
            "completedPomodoros": self.stats.completed_pomodoros,
            "afkSeconds": round(self.stats.total_afk_ms / 1000),
            "breakSeconds": round(self.stats.total_break_ms / 1000),
            "microbreakSeconds": round(self.stats.total_microbreak_ms / 1000),
            "highlightsDuring": self.stats.highlights_during,
            "notesDuring": self.stats.notes_during,
            "microbreakDue": self.microbreak_due,
            "microbreakActive": self.microbreak_active,
            "startTime": self.started_at.isoformat(),
        }


@dataclass
class SessionRecord:
    """Persisted row for one session. Owned by the store, not the engine."""

    id: str
    book_id: str
    mode: SessionMode
    work_minutes: int
    break_minutes: int
    afk_timeout_minutes: int
    microbreak_interval_minutes: int
    status: SessionStatus
    start_time: datetime
    end_time: datetime | None = None
    stats: SessionStats = field(default_factory=SessionStats)

    @property
    def duration_ms(self) -> int | None:
        if self.end_time is None:
            return None
        return max(0, int((self.end_time - self.start_time).total_seconds() * 1000))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "mode": self.mode.value,
            "work_minutes": self.work_minutes,
            "break_minutes": self.break_minutes,
            "afk_timeout_minutes": self.afk_timeout_minutes,
            "microbreak_interval_minutes": self.microbreak_interval_minutes,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            **self.stats.to_dict(),
        }


@dataclass(frozen=True)
class Highlight:
    id: str
    book_id: str
    text: str
    color: str
    cfi_range: str
    created_at: datetime
    chapter: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "text": self.text,
            "color": self.color,
            "cfi_range": self.cfi_range,
            "chapter": self.chapter,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class WrapUp:
    """Summary produced once, at a successful ``end()``.

    ``persisted`` is False when the final write failed; the summary is still
    valid and ``error`` carries the storage failure message.
    """

    snapshot: SessionSnapshot
    top_highlights: list[Highlight] = field(default_factory=list)
    ended_at: datetime | None = None
    persisted: bool = True
    error: str | None = None

    @property
    def stats(self) -> SessionStats:
        return self.snapshot.stats

    def to_dict(self) -> dict:
        return {
            "snapshot": self.snapshot.to_dict(),
            "top_highlights": [h.to_dict() for h in self.top_highlights],
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "active_time": format_duration(self.snapshot.stats.active_ms),
            "persisted": self.persisted,
            "error": self.error,
        }
