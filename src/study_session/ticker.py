"""Tick driver: runs a callback at a fixed interval on APScheduler.

The engine measures real elapsed time on every tick, so coalesced or late
jobs (system sleep, a busy loop) are reconciled rather than lost.
"""

from __future__ import annotations

import logging
import uuid
from typing import Awaitable, Callable, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class TickHandle(Protocol):
    def cancel(self) -> None:
        ...


class TickScheduler(Protocol):
    def every(self, interval_ms: int, callback: TickCallback) -> TickHandle:
        ...


class ApschedulerTickHandle:
    """Cancel handle for one interval job. cancel() is idempotent."""

    def __init__(self, scheduler: AsyncIOScheduler, job_id: str):
        self._scheduler = scheduler
        self.job_id = job_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        try:
            self._scheduler.remove_job(self.job_id)
        except JobLookupError:
            logger.debug(f"Tick job {self.job_id} already removed")


class ApschedulerTicker:
    """TickScheduler backed by an AsyncIOScheduler owned by the host app."""

    def __init__(self, scheduler: AsyncIOScheduler):
        self.scheduler = scheduler

    def every(self, interval_ms: int, callback: TickCallback) -> ApschedulerTickHandle:
        job_id = f"session-tick-{uuid.uuid4().hex[:8]}"
        self.scheduler.add_job(
            callback,
            IntervalTrigger(seconds=interval_ms / 1000),
            id=job_id,
            name="Study session tick",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )
        logger.debug(f"Tick job {job_id} scheduled every {interval_ms}ms")
        return ApschedulerTickHandle(self.scheduler, job_id)
