"""Snapshot stream: every front-end renders from the same SessionSnapshot feed."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .models import SessionSnapshot

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SessionSnapshot | None], None]


class SnapshotBroadcaster:
    """Fan out snapshots to async queue subscribers and sync listeners.

    Each subscriber gets its own bounded queue. A slow subscriber only ever
    loses its own oldest snapshots; the newest one always gets through.
    """

    def __init__(self, max_queue_size: int = 32):
        self.max_queue_size = max_queue_size
        self.queues: list[asyncio.Queue[SessionSnapshot | None]] = []
        self.listeners: list[SnapshotListener] = []
        self.latest: SessionSnapshot | None = None

    def subscribe(self) -> asyncio.Queue[SessionSnapshot | None]:
        queue: asyncio.Queue[SessionSnapshot | None] = asyncio.Queue(
            maxsize=self.max_queue_size
        )
        self.queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.queues:
            self.queues.remove(queue)

    def add_listener(self, listener: SnapshotListener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def publish(self, snapshot: SessionSnapshot | None) -> None:
        """Deliver a snapshot (None = session discarded) to everyone."""
        self.latest = snapshot
        for queue in self.queues:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)
        for listener in list(self.listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")
