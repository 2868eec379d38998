"""Exceptions raised by the study session engine and its controller."""

from __future__ import annotations


class SessionError(Exception):
    """Base class for all study session errors."""


class InvalidConfig(SessionError, ValueError):
    """Pomodoro or AFK durations rejected at start."""


class SessionAlreadyActive(SessionError, RuntimeError):
    """start() called while another session is still running."""


class NoActiveSession(SessionError, RuntimeError):
    """A session command was issued with no live session."""


class PersistenceFailure(SessionError):
    """The storage collaborator failed to write a session record."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id
