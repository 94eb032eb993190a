"""Authoritative time source.

Every expiration comparison goes through a single clock so that producers,
queries and subscription deliveries agree on what "now" is.
"""

from __future__ import annotations

import time
from collections.abc import Callable

Clock = Callable[[], int]
"""Callable returning the current time as epoch milliseconds."""


def system_clock_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


class ManualClock:
    """Settable clock for tests and simulations."""

    def __init__(self, start_ms: int = 0) -> None:
        self._now = int(start_ms)

    def __call__(self) -> int:
        return self._now

    def set(self, now_ms: int) -> None:
        self._now = int(now_ms)

    def advance(self, *, ms: int = 0, seconds: float = 0, minutes: float = 0) -> int:
        self._now += int(ms + seconds * 1000 + minutes * 60_000)
        return self._now
