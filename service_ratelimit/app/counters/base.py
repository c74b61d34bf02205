"""
Common lifecycle for per-key counters.
"""

import threading
from typing import Optional

from shared.errors import ConfigurationError, CounterRetiredError, ValidationError
from shared.logging import get_logger


class BaseCounter:
    """Capacity state for exactly one key.

    Mutable fields are guarded by a per-counter lock so the replenishment
    tick and caller threads never interleave. Counters are never shared
    between keys, so different keys never contend on the same lock.
    """

    def __init__(self, name: Optional[str] = None, logger_name: str = "ratelimit.counter"):
        self.name = name
        self.logger = get_logger(logger_name)
        self._lock = threading.Lock()
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        """Retire the counter. Idempotent and safe during an in-flight tick."""
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
        self._on_destroy()

    def _on_destroy(self) -> None:
        pass

    def _ensure_live(self) -> None:
        """Caller holds the lock."""
        if self._destroyed:
            raise CounterRetiredError(details={"counter": self.name})

    @staticmethod
    def _positive_int(name: str, value, allow_zero: bool = False) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{name} must be an integer", {name: repr(value)})
        if value < 0 or (value == 0 and not allow_zero):
            raise ConfigurationError(f"{name} must be positive", {name: value})
        return value

    @staticmethod
    def _validate_amount(amount) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer", {"amount": repr(amount)})
        return amount
