"""Study session engine for e-book readers: Pomodoro, AFK detection and microbreaks."""

from .controller import StudySessionController
from .engine import SessionEngine, SessionEvent, TickResult
from .errors import (
    InvalidConfig,
    NoActiveSession,
    PersistenceFailure,
    SessionAlreadyActive,
    SessionError,
)
from .models import (
    SessionConfig,
    SessionMode,
    SessionPhase,
    SessionSnapshot,
    SessionState,
    SessionStats,
    WrapUp,
)
from .store import SessionStore, SqliteSessionStore

__version__ = "0.1.0"

__all__ = [
    "InvalidConfig",
    "NoActiveSession",
    "PersistenceFailure",
    "SessionAlreadyActive",
    "SessionConfig",
    "SessionEngine",
    "SessionError",
    "SessionEvent",
    "SessionMode",
    "SessionPhase",
    "SessionSnapshot",
    "SessionState",
    "SessionStats",
    "SessionStore",
    "SqliteSessionStore",
    "StudySessionController",
    "TickResult",
    "WrapUp",
]
