"""
Per-key registries that create, look up and evict counters.
"""

from .keys import validate_key
from .registry import CounterRegistry, TokenBucketRegistry, WindowedRegistry

__all__ = ["validate_key", "CounterRegistry", "TokenBucketRegistry", "WindowedRegistry"]
