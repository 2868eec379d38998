"""Shared fakes: a settable clock, a hand-cranked ticker and an in-memory store."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from study_session.models import Highlight, SessionConfig, SessionStats, SessionStatus

WALL_START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start_ms: int = 0, wall_start: datetime = WALL_START):
        self.ms = start_ms
        self.wall_start = wall_start

    def now_ms(self) -> int:
        return self.ms

    def wall(self) -> datetime:
        return self.wall_start + timedelta(milliseconds=self.ms)

    def advance(self, ms: int) -> None:
        self.ms += ms


class ManualTickHandle:
    def __init__(self, interval_ms: int, callback):
        self.interval_ms = interval_ms
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTicker:
    """TickScheduler whose jobs only run when a test calls fire()."""

    def __init__(self):
        self.handles: list[ManualTickHandle] = []

    def every(self, interval_ms: int, callback) -> ManualTickHandle:
        handle = ManualTickHandle(interval_ms, callback)
        self.handles.append(handle)
        return handle

    @property
    def active(self) -> list[ManualTickHandle]:
        return [h for h in self.handles if not h.cancelled]

    async def fire(self) -> None:
        for handle in self.active:
            await handle.callback()


class MemoryStore:
    """SessionStore kept in dicts. Set fail_* flags to simulate a broken disk."""

    def __init__(self):
        self.records: dict[str, dict] = {}
        self.highlights: list[Highlight] = []
        self.updates: list[tuple[str, dict]] = []
        self.finalized: list[tuple[str, SessionStats | None, SessionStatus, datetime]] = []
        self.fail_create = False
        self.fail_update = False
        self.fail_finalize = False
        self.fail_query = False

    async def create_session_record(
        self, book_id: str, config: SessionConfig, started_at: datetime
    ) -> str:
        if self.fail_create:
            raise OSError("disk full")
        session_id = str(uuid.uuid4())
        self.records[session_id] = {
            "book_id": book_id,
            "config": config,
            "start_time": started_at,
            "status": SessionStatus.ACTIVE,
            "stats": SessionStats(),
        }
        return session_id

    async def update_session_record(self, session_id: str, patch: dict) -> None:
        if self.fail_update:
            raise OSError("disk full")
        self.updates.append((session_id, dict(patch)))
        self.records[session_id].update(patch)

    async def finalize_session_record(
        self,
        session_id: str,
        stats: SessionStats | None,
        status: SessionStatus,
        ended_at: datetime,
    ) -> None:
        if self.fail_finalize:
            raise OSError("database is locked")
        self.finalized.append((session_id, stats, status, ended_at))
        record = self.records[session_id]
        record["status"] = status
        record["end_time"] = ended_at
        if stats is not None:
            record["stats"] = stats

    async def query_highlights(
        self, book_id: str, since: datetime, until: datetime, limit: int = 3
    ) -> list[Highlight]:
        if self.fail_query:
            raise OSError("no such table: highlights")
        matches = [
            h for h in self.highlights
            if h.book_id == book_id and since <= h.created_at <= until
        ]
        matches.sort(key=lambda h: h.created_at, reverse=True)
        return matches[:limit]

    def add_highlight(self, book_id: str, text: str, created_at: datetime) -> Highlight:
        highlight = Highlight(
            id=str(uuid.uuid4()),
            book_id=book_id,
            text=text,
            color="yellow",
            cfi_range="epubcfi(/6/4!/4/2,/1:0,/1:10)",
            created_at=created_at,
        )
        self.highlights.append(highlight)
        return highlight


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ticker() -> ManualTicker:
    return ManualTicker()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
