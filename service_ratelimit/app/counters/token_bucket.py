"""
Token bucket counter.

Capacity refills by ``increment`` tokens every ``tick_interval_ms`` up to
``limit``. How a decrement behaves when the bucket runs dry is chosen once
per bucket through ``DecrementPolicy``:

- STRICT raises ``InsufficientCapacityError`` when fewer than ``amount``
  tokens are available and leaves the bucket untouched.
- CLAMPED never raises; a bucket holding any tokens pays the full amount,
  even past zero, and an empty or negative bucket is left as is.

See https://en.wikipedia.org/wiki/Token_bucket
"""

from enum import Enum
from typing import Optional

from shared.errors import InsufficientCapacityError

from ..scheduling import ScheduledTask, Scheduler, get_default_scheduler
from .base import BaseCounter

DEFAULT_LIMIT = 25
DEFAULT_INCREMENT = 1
DEFAULT_TICK_INTERVAL_MS = 5000
DEFAULT_CLAMPED_TICK_INTERVAL_MS = 500


class DecrementPolicy(str, Enum):
    """What consume() does when capacity runs out."""
    STRICT = "strict"
    CLAMPED = "clamped"


def default_tick_interval(policy: DecrementPolicy) -> int:
    if DecrementPolicy(policy) is DecrementPolicy.CLAMPED:
        return DEFAULT_CLAMPED_TICK_INTERVAL_MS
    return DEFAULT_TICK_INTERVAL_MS


class TokenBucket(BaseCounter):
    """Continuously refilling capacity for one key."""

    def __init__(self,
                 limit: Optional[int] = None,
                 increment: Optional[int] = None,
                 tick_interval_ms: Optional[int] = None,
                 policy: DecrementPolicy = DecrementPolicy.STRICT,
                 scheduler: Optional[Scheduler] = None,
                 name: Optional[str] = None):
        super().__init__(name=name, logger_name="ratelimit.token_bucket")
        self.policy = DecrementPolicy(policy)
        self.limit = self._positive_int("limit", DEFAULT_LIMIT if limit is None else limit)
        self.increment = self._positive_int("increment", DEFAULT_INCREMENT if increment is None else increment)
        self.tick_interval_ms = self._positive_int(
            "tick_interval_ms",
            default_tick_interval(self.policy) if tick_interval_ms is None else tick_interval_ms
        )
        self._tokens = self.limit

        self._scheduler = scheduler or get_default_scheduler()
        self._task: Optional[ScheduledTask] = self._scheduler.schedule_interval(
            self.tick_interval_ms,
            self.replenish,
            name=f"replenish:{name}" if name is not None else "replenish"
        )

    @property
    def tokens(self) -> int:
        return self._tokens

    def remaining(self) -> int:
        """Currently available tokens. Lock-free; never mutates."""
        return self._tokens

    def is_full(self) -> bool:
        return self._tokens >= self.limit

    def consume(self, amount: int = 1) -> int:
        """Take ``amount`` tokens and return what is left."""
        amount = self._validate_amount(amount)

        with self._lock:
            self._ensure_live()
            if self.policy is DecrementPolicy.STRICT:
                if self._tokens < amount:
                    raise InsufficientCapacityError(requested=amount, available=self._tokens)
                self._tokens -= amount
            elif self._tokens > 0:
                self._tokens -= amount
            return self._tokens

    def try_consume(self, amount: int = 1) -> bool:
        """Admission form of consume(): True when the unit of work may proceed."""
        amount = self._validate_amount(amount)

        with self._lock:
            self._ensure_live()
            if self.policy is DecrementPolicy.STRICT:
                if self._tokens < amount:
                    return False
                self._tokens -= amount
                return True

            if self._tokens > 0:
                self._tokens -= amount
                return True
            return False

    def replenish(self) -> int:
        """One refill tick. Total: clamps at the limit and never raises."""
        with self._lock:
            if not self._destroyed and self._tokens < self.limit:
                self._tokens = min(self.limit, self._tokens + self.increment)
            return self._tokens

    def retire_if_full(self) -> bool:
        """Destroy the bucket only if it has fully recovered."""
        with self._lock:
            if self._destroyed or self._tokens < self.limit:
                return False
            self._destroyed = True
        self._on_destroy()
        return True

    def _on_destroy(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()

    def __repr__(self) -> str:
        return (
            f"<TokenBucket {self.name!r} {self._tokens}/{self.limit} "
            f"+{self.increment}/{self.tick_interval_ms}ms {self.policy.value}>"
        )
