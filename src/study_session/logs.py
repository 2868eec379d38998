"""Logging setup: package logger, recent-log ring buffer and crash log."""

from __future__ import annotations

import logging
import sys
import traceback
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque

logger = logging.getLogger("study_session")

# Circular buffer to store recent log entries (max 100)
log_buffer: Deque[dict] = deque(maxlen=100)


class LogBufferHandler(logging.Handler):
    """Logging handler that captures records into the circular buffer."""

    def emit(self, record: logging.LogRecord):
        try:
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            }
            log_buffer.append(log_entry)
        except Exception:
            self.handleError(record)


buffer_handler = LogBufferHandler()
buffer_handler.setLevel(logging.DEBUG)
buffer_handler.setFormatter(logging.Formatter("%(message)s"))


def configure_logging(level: str = "INFO") -> None:
    """Attach the buffer and a stderr handler to the package, uvicorn and fastapi loggers."""
    logger.setLevel(level)
    if buffer_handler not in logger.handlers:
        logger.addHandler(buffer_handler)
        stream = logging.StreamHandler()
        stream.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(stream)

    for name in ("uvicorn", "fastapi"):
        other = logging.getLogger(name)
        if buffer_handler not in other.handlers:
            other.addHandler(buffer_handler)


def recent_logs(limit: int = 50) -> list[dict]:
    return list(log_buffer)[-limit:]


def log_crash(crash_log_path: Path, exc: BaseException, context: str = "unhandled") -> None:
    """Append a traceback to the crash log for post-mortem debugging."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    try:
        crash_log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(crash_log_path, "a") as f:
            f.write(f"\n{'=' * 60}\n")
            f.write(f"CRASH [{context}] at {timestamp}\n")
            f.write(f"{'=' * 60}\n")
            f.write(tb_str)
            f.write("\n")
    except OSError as e:
        logger.error(f"Could not write crash log {crash_log_path}: {e}")
    # Also print to stderr so journald captures it
    print(f"CRASH [{context}]: {type(exc).__name__}: {exc}", file=sys.stderr)


def make_asyncio_exception_handler(crash_log_path: Path):
    """Loop exception handler that records crashes, then defers to the default."""

    def handler(loop, context):
        exception = context.get("exception")
        if exception is not None:
            log_crash(crash_log_path, exception, context="asyncio")
        else:
            logger.error(f"asyncio error: {context.get('message')}")
        loop.default_exception_handler(context)

    return handler
