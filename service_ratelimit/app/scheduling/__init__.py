"""
Clocks and periodic schedulers that drive counter replenishment.
"""

from .clock import Clock, MonotonicClock, ManualClock
from .scheduler import (
    ScheduledTask,
    Scheduler,
    SchedulerShutdownError,
    ThreadScheduler,
    AsyncioScheduler,
    ManualScheduler,
    get_default_scheduler,
    shutdown_default_scheduler,
)

__all__ = [
    "Clock",
    "MonotonicClock",
    "ManualClock",
    "ScheduledTask",
    "Scheduler",
    "SchedulerShutdownError",
    "ThreadScheduler",
    "AsyncioScheduler",
    "ManualScheduler",
    "get_default_scheduler",
    "shutdown_default_scheduler",
]
