"""
Key-indexed registries of counters.

A registry owns every counter it creates. Lookups of an existing key are
lock-free; the registry lock is only taken to create a missing counter, to
sweep idle ones, and at shutdown, so steady-state traffic on one key never
waits on another key.
"""

import threading
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, TypeVar

from shared.errors import CounterRetiredError, InsufficientCapacityError, InvalidKeyError
from shared.logging import get_logger
from shared.metrics import RateLimitMetrics, get_metrics

from ..counters import BaseCounter, DecrementPolicy, TokenBucket, WindowedCounter
from ..counters import token_bucket, windowed
from ..scheduling import Clock, ScheduledTask, Scheduler, get_default_scheduler
from .keys import validate_key

C = TypeVar("C", bound=BaseCounter)
T = TypeVar("T")


class CounterRegistry(Generic[C]):
    """Maps keys to counters, creating them on first use."""

    def __init__(self,
                 factory: Callable[[Hashable], C],
                 name: str = "default",
                 metrics: Optional[RateLimitMetrics] = None):
        self.name = name
        self.logger = get_logger(f"ratelimit.registry.{name}")
        self.metrics = metrics or get_metrics()
        self._factory = factory
        self._counters: Dict[Hashable, C] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def get_or_create(self, key: Any) -> C:
        """Return the live counter for ``key``, creating it if absent."""
        key = validate_key(key)
        self._ensure_open()

        counter = self._counters.get(key)
        if counter is not None and not counter.destroyed:
            return counter

        created = False
        with self._lock:
            if self._closed:
                raise CounterRetiredError(f"Registry '{self.name}' has been shut down")
            counter = self._counters.get(key)
            if counter is None or counter.destroyed:
                counter = self._factory(key)
                self._counters[key] = counter
                created = True
            size = len(self._counters)

        if created:
            self.metrics.record_counter_created(self.name)
            self.metrics.set_active_keys(self.name, size)
            self.logger.debug("Created counter", key=str(key), active_keys=size)
        return counter

    def get(self, key: Any) -> Optional[C]:
        """Return the live counter for ``key`` without creating one."""
        counter = self._counters.get(validate_key(key))
        if counter is None or counter.destroyed:
            return None
        return counter

    def remove(self, key: Any) -> bool:
        """Destroy and forget the counter for ``key``."""
        key = validate_key(key)
        with self._lock:
            counter = self._counters.pop(key, None)
            size = len(self._counters)
        if counter is None:
            return False

        counter.destroy()
        self.metrics.set_active_keys(self.name, size)
        self.logger.info("Counter removed", key=str(key))
        return True

    def keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._counters)

    def __len__(self) -> int:
        return len(self._counters)

    def __contains__(self, key: Any) -> bool:
        try:
            return validate_key(key) in self._counters
        except InvalidKeyError:
            return False

    def destroy_all(self) -> None:
        """Destroy every counter and stop housekeeping. Idempotent."""
        with self._lock:
            already_closed = self._closed
            self._closed = True
            counters = list(self._counters.values())
            self._counters.clear()

        for counter in counters:
            counter.destroy()
        self._on_shutdown()

        if not already_closed:
            self.metrics.set_active_keys(self.name, 0)
            self.logger.info("Registry shut down", destroyed=len(counters))

    shutdown = destroy_all

    def stats(self) -> Dict[str, Any]:
        return {
            "limiter": self.name,
            "active_keys": len(self._counters),
            "closed": self._closed,
        }

    def _on_shutdown(self) -> None:
        pass

    def _housekeeping_stopped(self) -> bool:
        return False

    def _ensure_open(self) -> None:
        """Shut down once housekeeping has stopped, then refuse further lookups."""
        if not self._closed and self._housekeeping_stopped():
            self.logger.warning("Scheduler stopped, shutting registry down", limiter=self.name)
            self.destroy_all()
        if self._closed:
            raise CounterRetiredError(f"Registry '{self.name}' has been shut down")

    def _with_counter(self, key: Any, operation: Callable[[C], T]) -> T:
        """Run ``operation`` on the key's counter, retrying once if it was evicted mid-call."""
        counter = self.get_or_create(key)
        try:
            return operation(counter)
        except CounterRetiredError:
            if self._closed:
                raise
            return operation(self.get_or_create(key))


class TokenBucketRegistry(CounterRegistry[TokenBucket]):
    """Token buckets per key, with periodic eviction of fully recovered buckets."""

    def __init__(self,
                 limit: Optional[int] = None,
                 increment: Optional[int] = None,
                 tick_interval_ms: Optional[int] = None,
                 policy: DecrementPolicy = DecrementPolicy.STRICT,
                 scheduler: Optional[Scheduler] = None,
                 eviction_interval_ms: Optional[int] = None,
                 evict_on_schedule: bool = True,
                 name: str = "token_bucket",
                 metrics: Optional[RateLimitMetrics] = None):
        super().__init__(self._create_bucket, name=name, metrics=metrics)
        self.policy = DecrementPolicy(policy)
        self.limit = BaseCounter._positive_int(
            "limit", token_bucket.DEFAULT_LIMIT if limit is None else limit
        )
        self.increment = BaseCounter._positive_int(
            "increment", token_bucket.DEFAULT_INCREMENT if increment is None else increment
        )
        self.tick_interval_ms = BaseCounter._positive_int(
            "tick_interval_ms",
            token_bucket.default_tick_interval(self.policy) if tick_interval_ms is None else tick_interval_ms
        )
        self.eviction_interval_ms = BaseCounter._positive_int(
            "eviction_interval_ms",
            self.tick_interval_ms if eviction_interval_ms is None else eviction_interval_ms
        )
        self.scheduler = scheduler or get_default_scheduler()

        self._eviction_task: Optional[ScheduledTask] = None
        if evict_on_schedule:
            self._eviction_task = self.scheduler.schedule_interval(
                self.eviction_interval_ms,
                self.evict_idle,
                name=f"evict:{name}"
            )

    def _create_bucket(self, key: Hashable) -> TokenBucket:
        return TokenBucket(
            limit=self.limit,
            increment=self.increment,
            tick_interval_ms=self.tick_interval_ms,
            policy=self.policy,
            scheduler=self.scheduler,
            name=str(key)
        )

    def consume(self, key: Any, amount: int = 1) -> int:
        """Take ``amount`` tokens from ``key``'s bucket and return what is left."""
        try:
            remaining = self._with_counter(key, lambda bucket: bucket.consume(amount))
        except InsufficientCapacityError as e:
            self.metrics.record_decision(self.name, False)
            self.logger.debug("Insufficient capacity", key=str(key), **e.details)
            raise
        self.metrics.record_decision(self.name, True)
        return remaining

    def try_consume(self, key: Any, amount: int = 1) -> bool:
        allowed = self._with_counter(key, lambda bucket: bucket.try_consume(amount))
        self.metrics.record_decision(self.name, allowed)
        if not allowed:
            self.logger.debug("Request throttled", key=str(key), amount=amount)
        return allowed

    def admit(self, key: Any) -> bool:
        return self.try_consume(key)

    def remaining(self, key: Any) -> int:
        """Tokens left for ``key``; creates a full bucket for an unseen key."""
        return self.get_or_create(key).remaining()

    def evict_idle(self) -> List[Hashable]:
        """Destroy and remove every bucket that has fully recovered."""
        with self._lock:
            snapshot = list(self._counters.items())

        retired = [(key, bucket) for key, bucket in snapshot if bucket.retire_if_full()]
        if not retired:
            return []

        with self._lock:
            for key, bucket in retired:
                if self._counters.get(key) is bucket:
                    del self._counters[key]
            size = len(self._counters)

        self.metrics.record_evictions(self.name, len(retired))
        self.metrics.set_active_keys(self.name, size)
        self.logger.info("Evicted idle counters", evicted=len(retired), active_keys=size)
        return [key for key, _ in retired]

    def _on_shutdown(self) -> None:
        task, self._eviction_task = self._eviction_task, None
        if task is not None:
            task.cancel()

    def _housekeeping_stopped(self) -> bool:
        return self.scheduler.stopped

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats.update({
            "algorithm": "token_bucket",
            "policy": self.policy.value,
            "limit": self.limit,
            "increment": self.increment,
            "tick_interval_ms": self.tick_interval_ms,
        })
        return stats


class WindowedRegistry(CounterRegistry[WindowedCounter]):
    """Windowed counters per key. Windows reset lazily, so nothing is swept."""

    def __init__(self,
                 limit: Optional[int] = None,
                 window_ms: Optional[int] = None,
                 clock: Optional[Clock] = None,
                 name: str = "windowed",
                 metrics: Optional[RateLimitMetrics] = None):
        super().__init__(self._create_counter, name=name, metrics=metrics)
        self.limit = BaseCounter._positive_int(
            "limit", windowed.DEFAULT_LIMIT if limit is None else limit
        )
        self.window_ms = BaseCounter._positive_int(
            "window_ms", windowed.DEFAULT_WINDOW_MS if window_ms is None else window_ms, allow_zero=True
        )
        self.clock = clock

    def _create_counter(self, key: Hashable) -> WindowedCounter:
        return WindowedCounter(limit=self.limit, window_ms=self.window_ms, clock=self.clock, name=str(key))

    def check_eligible(self, key: Any) -> bool:
        """Record one use for ``key`` and report whether it is within the window's limit."""
        eligible = self._with_counter(key, lambda counter: counter.record_use())
        self.metrics.record_decision(self.name, eligible)
        if not eligible:
            self.logger.debug("Request not eligible", key=str(key))
        return eligible

    def admit(self, key: Any) -> bool:
        return self.check_eligible(key)

    def remaining(self, key: Any) -> int:
        return self.get_or_create(key).remaining()

    def remaining_in_window(self, key: Any) -> float:
        return self.get_or_create(key).remaining_in_window()

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats.update({
            "algorithm": "windowed",
            "limit": self.limit,
            "window_ms": self.window_ms,
        })
        return stats
