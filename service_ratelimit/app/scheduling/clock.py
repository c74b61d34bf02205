"""
Millisecond clocks used by counters and schedulers.
"""

import threading
import time
from typing import Protocol


class Clock(Protocol):
    """Source of elapsed time in milliseconds."""

    def now_ms(self) -> float:
        ...


class MonotonicClock:
    """Real clock backed by time.monotonic()."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0


class ManualClock:
    """Virtual clock that only moves when told to."""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)
        self._lock = threading.Lock()

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float) -> float:
        """Move time forward by ``ms`` and return the new reading."""
        if ms < 0:
            raise ValueError("clock cannot move backwards")
        with self._lock:
            self._now += ms
            return self._now

    def set(self, now_ms: float) -> float:
        with self._lock:
            if now_ms < self._now:
                raise ValueError("clock cannot move backwards")
            self._now = float(now_ms)
            return self._now
