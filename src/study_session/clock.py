"""Time source for the controller: monotonic ms for accounting, UTC for records."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> int:
        """Monotonic milliseconds. Never goes backwards."""
        ...

    def wall(self) -> datetime:
        """Timezone-aware wall-clock time, used for persisted timestamps."""
        ...


class SystemClock:
    def now_ms(self) -> int:
        return time.monotonic_ns() // 1_000_000

    def wall(self) -> datetime:
        return datetime.now(timezone.utc)
