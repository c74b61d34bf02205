"""
Windowed request counter.

Allows ``limit`` uses per window of ``window_ms``. The window is reset
lazily: any read that finds the window expired restarts it at the current
time, so no background timer is needed. Every call to ``record_use()``
counts, including the ones that get rejected.
"""

from typing import Optional

from ..scheduling import Clock, MonotonicClock
from .base import BaseCounter

DEFAULT_LIMIT = 20
DEFAULT_WINDOW_MS = 5000


class WindowedCounter(BaseCounter):
    """Fixed-size allowance reset by elapsed time."""

    def __init__(self,
                 limit: Optional[int] = None,
                 window_ms: Optional[int] = None,
                 clock: Optional[Clock] = None,
                 name: Optional[str] = None):
        super().__init__(name=name, logger_name="ratelimit.windowed")
        self.limit = self._positive_int("limit", DEFAULT_LIMIT if limit is None else limit)
        self.window_ms = self._positive_int(
            "window_ms",
            DEFAULT_WINDOW_MS if window_ms is None else window_ms,
            allow_zero=True
        )
        self.clock = clock or MonotonicClock()
        self._window_start = self.clock.now_ms()
        self._requests = 0

    @property
    def window_start_ms(self) -> float:
        return self._window_start

    @property
    def requests_in_window(self) -> int:
        return self._requests

    def _roll(self) -> float:
        """Reset an expired window and return the ms left in it. Caller holds the lock."""
        now = self.clock.now_ms()
        elapsed = now - self._window_start
        if elapsed >= self.window_ms:
            self._window_start = now
            self._requests = 0
            return float(self.window_ms)
        return self.window_ms - elapsed

    def remaining_in_window(self) -> float:
        """Milliseconds until the current window expires."""
        with self._lock:
            self._ensure_live()
            return self._roll()

    def remaining(self) -> int:
        """Uses left in the current window."""
        with self._lock:
            self._ensure_live()
            self._roll()
            return max(0, self.limit - self._requests)

    def record_use(self) -> bool:
        """Count one use and report whether it is within the limit."""
        with self._lock:
            self._ensure_live()
            self._roll()
            self._requests += 1
            if self.window_ms == 0:
                return True
            return self._requests <= self.limit

    def __repr__(self) -> str:
        return f"<WindowedCounter {self.name!r} {self._requests}/{self.limit} per {self.window_ms}ms>"
