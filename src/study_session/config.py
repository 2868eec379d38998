"""Configuration for the study session service.

Everything is read from STUDY_SESSION_* environment variables at startup;
tests point STUDY_SESSION_DB at a temporary file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .models import SessionConfig, SessionMode

DEFAULT_HOME = Path.home() / ".study-session"
DEFAULT_PORT = 7788  # Authoritative port for the session service


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


@dataclass
class Settings:
    db_path: Path = DEFAULT_HOME / "sessions.db"
    crash_log_path: Path = DEFAULT_HOME / "crash.log"
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    tick_interval_ms: int = 1000
    retry_seconds: int = 60
    top_highlights: int = 3
    afk_prompt_seconds: int = 60  # 0 disables the automatic end
    default_session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        home = Path(env.get("STUDY_SESSION_HOME", str(DEFAULT_HOME))).expanduser()

        default_session = SessionConfig(
            mode=SessionMode(env.get("STUDY_SESSION_DEFAULT_MODE", SessionMode.POMODORO.value)),
            work_minutes=_int(env, "STUDY_SESSION_WORK_MINUTES", 25),
            break_minutes=_int(env, "STUDY_SESSION_BREAK_MINUTES", 5),
            afk_timeout_minutes=_int(env, "STUDY_SESSION_AFK_MINUTES", 5),
            microbreak_interval_minutes=_int(env, "STUDY_SESSION_MICROBREAK_MINUTES", 20),
        )

        settings = cls(
            db_path=Path(env.get("STUDY_SESSION_DB", str(home / "sessions.db"))).expanduser(),
            crash_log_path=Path(
                env.get("STUDY_SESSION_CRASH_LOG", str(home / "crash.log"))
            ).expanduser(),
            host=env.get("STUDY_SESSION_HOST", "127.0.0.1"),
            port=_int(env, "STUDY_SESSION_PORT", DEFAULT_PORT),
            log_level=env.get("STUDY_SESSION_LOG_LEVEL", "INFO").upper(),
            tick_interval_ms=_int(env, "STUDY_SESSION_TICK_MS", 1000),
            retry_seconds=_int(env, "STUDY_SESSION_RETRY_SECONDS", 60),
            top_highlights=_int(env, "STUDY_SESSION_TOP_HIGHLIGHTS", 3),
            afk_prompt_seconds=_int(env, "STUDY_SESSION_AFK_PROMPT_SECONDS", 60),
            default_session=default_session,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.tick_interval_ms <= 0:
            raise ValueError(f"tick_interval_ms must be > 0, got {self.tick_interval_ms}")
        if self.retry_seconds <= 0:
            raise ValueError(f"retry_seconds must be > 0, got {self.retry_seconds}")
        if self.afk_prompt_seconds < 0:
            raise ValueError(f"afk_prompt_seconds must be >= 0, got {self.afk_prompt_seconds}")
        self.default_session.validate()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def get_settings() -> Settings:
    return Settings.from_env()
