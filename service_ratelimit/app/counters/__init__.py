"""
Counter variants holding capacity for a single key.
"""

from .base import BaseCounter
from .token_bucket import DecrementPolicy, TokenBucket
from .windowed import WindowedCounter

__all__ = ["BaseCounter", "DecrementPolicy", "TokenBucket", "WindowedCounter"]
