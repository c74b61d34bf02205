"""
Periodic schedulers for counter replenishment and registry housekeeping.

Every counter owns one ``ScheduledTask`` registered with a shared
``Scheduler``. Cancelling the task (or shutting the scheduler down) stops
further ticks; a tick already running when the task is cancelled finishes
against whatever state it holds and is never re-armed.
"""

import asyncio
import heapq
import itertools
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from shared.errors import RateLimiterException
from shared.logging import get_logger

from .clock import Clock, ManualClock, MonotonicClock


class SchedulerShutdownError(RateLimiterException):
    """Raised when scheduling on a scheduler that has been shut down."""

    def __init__(self, message: str = "Scheduler has been shut down", details: Optional[Dict[str, Any]] = None):
        super().__init__("SCHEDULER_SHUTDOWN", message, details)


class ScheduledTask:
    """Cancellable handle for one periodic callback."""

    def __init__(self,
                 scheduler: "Scheduler",
                 callback: Callable[[], object],
                 interval_ms: float,
                 name: Optional[str] = None):
        self.callback = callback
        self.interval_ms = interval_ms
        self.name = name or getattr(callback, "__qualname__", "task")
        self._scheduler = scheduler
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop future ticks. Safe to call any number of times."""
        if self._cancelled:
            return
        self._cancelled = True
        self._scheduler._on_cancel(self)

    def run(self) -> None:
        """Invoke the callback once; failures are logged, never raised."""
        if self._cancelled:
            return
        try:
            self.callback()
        except Exception as e:
            self._scheduler.logger.error(
                "Scheduled task failed",
                task=self.name,
                error=str(e),
                exc_info=True
            )

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<ScheduledTask {self.name} every {self.interval_ms}ms {state}>"


class Scheduler(ABC):
    """Registers periodic callbacks against a clock."""

    def __init__(self, clock: Clock, logger_name: str):
        self.clock = clock
        self.logger = get_logger(logger_name)
        self._stopped = False

    @property
    def stopped(self) -> bool:
        """True once shutdown() has run; no task fires afterwards."""
        return self._stopped

    @abstractmethod
    def schedule_interval(self,
                          interval_ms: float,
                          callback: Callable[[], object],
                          name: Optional[str] = None) -> ScheduledTask:
        """Run ``callback`` every ``interval_ms`` until the task is cancelled."""

    @abstractmethod
    def shutdown(self) -> None:
        """Cancel every task and stop the scheduler. Idempotent."""

    @abstractmethod
    def pending(self) -> int:
        """Number of live (not cancelled) tasks."""

    @abstractmethod
    def _on_cancel(self, task: ScheduledTask) -> None:
        ...

    @staticmethod
    def _validate_interval(interval_ms: float) -> None:
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, (int, float)) or interval_ms <= 0:
            raise ValueError(f"interval_ms must be a positive number, got {interval_ms!r}")


class ThreadScheduler(Scheduler):
    """Shared background thread driving all periodic tasks from a heap."""

    def __init__(self, clock: Optional[Clock] = None, name: str = "ratelimit-scheduler"):
        super().__init__(clock or MonotonicClock(), "ratelimit.scheduler.thread")
        self.name = name
        self._heap: List[Tuple[float, int, ScheduledTask]] = []
        self._seq = itertools.count()
        self._tasks: Set[ScheduledTask] = set()
        self._condition = threading.Condition()
        self._thread: Optional[threading.Thread] = None

    def schedule_interval(self,
                          interval_ms: float,
                          callback: Callable[[], object],
                          name: Optional[str] = None) -> ScheduledTask:
        self._validate_interval(interval_ms)
        task = ScheduledTask(self, callback, interval_ms, name)

        with self._condition:
            if self._stopped:
                raise SchedulerShutdownError(f"Scheduler '{self.name}' has been shut down")
            self._tasks.add(task)
            self._push(task, self.clock.now_ms() + interval_ms)
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self._thread.start()
            self._condition.notify()

        return task

    def pending(self) -> int:
        with self._condition:
            return len(self._tasks)

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        with self._condition:
            if self._stopped:
                return
            self._stopped = True
            for task in self._tasks:
                task._cancelled = True
            self._tasks.clear()
            self._heap.clear()
            self._condition.notify_all()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self.logger.info("Scheduler stopped", scheduler=self.name)

    def _on_cancel(self, task: ScheduledTask) -> None:
        with self._condition:
            self._tasks.discard(task)
            self._condition.notify()

    def _push(self, task: ScheduledTask, due_ms: float) -> None:
        heapq.heappush(self._heap, (due_ms, next(self._seq), task))

    def _next_due(self) -> Optional[Tuple[float, ScheduledTask]]:
        """Block until a task is due; None once stopped. Caller holds the condition."""
        while not self._stopped:
            if not self._heap:
                self._condition.wait()
                continue

            due, _, task = self._heap[0]
            if task.cancelled:
                heapq.heappop(self._heap)
                continue

            now = self.clock.now_ms()
            if due > now:
                self._condition.wait((due - now) / 1000.0)
                continue

            heapq.heappop(self._heap)
            return due, task

        return None

    def _run(self) -> None:
        while True:
            with self._condition:
                entry = self._next_due()
            if entry is None:
                return

            due, task = entry
            task.run()

            with self._condition:
                if task.cancelled or self._stopped:
                    continue
                # Missed periods are skipped, not replayed.
                next_due = due + task.interval_ms
                now = self.clock.now_ms()
                if next_due <= now:
                    next_due = now + task.interval_ms
                self._push(task, next_due)


class AsyncioScheduler(Scheduler):
    """Drives ticks through ``loop.call_later``.

    Must be used from the event loop thread: tasks are scheduled and
    cancelled on the loop the scheduler is bound to.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None, clock: Optional[Clock] = None):
        super().__init__(clock or MonotonicClock(), "ratelimit.scheduler.asyncio")
        self._loop = loop
        self._handles: Dict[ScheduledTask, asyncio.TimerHandle] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule_interval(self,
                          interval_ms: float,
                          callback: Callable[[], object],
                          name: Optional[str] = None) -> ScheduledTask:
        self._validate_interval(interval_ms)
        if self._stopped:
            raise SchedulerShutdownError("Asyncio scheduler has been shut down")

        task = ScheduledTask(self, callback, interval_ms, name)
        self._arm(task)
        return task

    def _arm(self, task: ScheduledTask) -> None:
        loop = self._get_loop()
        self._handles[task] = loop.call_later(task.interval_ms / 1000.0, self._fire, task)

    def _fire(self, task: ScheduledTask) -> None:
        self._handles.pop(task, None)
        if task.cancelled or self._stopped:
            return
        task.run()
        if not task.cancelled and not self._stopped:
            self._arm(task)

    def pending(self) -> int:
        return len(self._handles)

    def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for task, handle in list(self._handles.items()):
            task._cancelled = True
            handle.cancel()
        self._handles.clear()

    def _on_cancel(self, task: ScheduledTask) -> None:
        handle = self._handles.pop(task, None)
        if handle is not None:
            handle.cancel()


class ManualScheduler(Scheduler):
    """Virtual-time scheduler; ticks fire only inside ``advance()``."""

    def __init__(self, clock: Optional[ManualClock] = None, start_ms: float = 0.0):
        super().__init__(clock or ManualClock(start_ms), "ratelimit.scheduler.manual")
        self._heap: List[Tuple[float, int, ScheduledTask]] = []
        self._seq = itertools.count()
        self._tasks: Set[ScheduledTask] = set()
        self._lock = threading.RLock()

    def schedule_interval(self,
                          interval_ms: float,
                          callback: Callable[[], object],
                          name: Optional[str] = None) -> ScheduledTask:
        self._validate_interval(interval_ms)
        task = ScheduledTask(self, callback, interval_ms, name)
        with self._lock:
            if self._stopped:
                raise SchedulerShutdownError("Manual scheduler has been shut down")
            self._tasks.add(task)
            heapq.heappush(self._heap, (self.clock.now_ms() + interval_ms, next(self._seq), task))
        return task

    def advance(self, ms: float) -> int:
        """Move virtual time forward, firing due ticks in order. Returns ticks fired."""
        if ms < 0:
            raise ValueError("cannot advance by a negative amount")

        target = self.clock.now_ms() + ms
        fired = 0

        while True:
            with self._lock:
                entry = self._pop_due(target)
            if entry is None:
                break

            due, task = entry
            self.clock.set(due)
            task.run()
            fired += 1

            with self._lock:
                if not task.cancelled and not self._stopped:
                    heapq.heappush(self._heap, (due + task.interval_ms, next(self._seq), task))

        self.clock.set(target)
        return fired

    def _pop_due(self, target: float) -> Optional[Tuple[float, ScheduledTask]]:
        while self._heap:
            due, _, task = self._heap[0]
            if task.cancelled:
                heapq.heappop(self._heap)
                continue
            if due > target:
                return None
            heapq.heappop(self._heap)
            return due, task
        return None

    def pending(self) -> int:
        with self._lock:
            return len(self._tasks)

    def shutdown(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            for task in self._tasks:
                task._cancelled = True
            self._tasks.clear()
            self._heap.clear()

    def _on_cancel(self, task: ScheduledTask) -> None:
        with self._lock:
            self._tasks.discard(task)


_default_scheduler: Optional[ThreadScheduler] = None
_default_lock = threading.Lock()


def get_default_scheduler() -> ThreadScheduler:
    """Get the process-wide background scheduler, starting a new one if needed."""
    global _default_scheduler
    with _default_lock:
        if _default_scheduler is None:
            _default_scheduler = ThreadScheduler()
        return _default_scheduler


def shutdown_default_scheduler() -> None:
    """Stop the process-wide scheduler; the next lookup creates a fresh one."""
    global _default_scheduler
    with _default_lock:
        scheduler, _default_scheduler = _default_scheduler, None
    if scheduler is not None:
        scheduler.shutdown()
