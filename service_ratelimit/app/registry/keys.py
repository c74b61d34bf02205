"""
Rate-limit key validation.
"""

import math
from typing import Any, Hashable

from shared.errors import InvalidKeyError

SCALAR_KEY_TYPES = (str, bytes, int, float)


def validate_key(key: Any) -> Hashable:
    """Return ``key`` unchanged if it is a usable scalar identifier.

    ``bool`` is rejected because ``True``/``False`` collide with ``1``/``0``
    as dictionary keys, and NaN because it never compares equal to itself.
    Numeric keys follow Python equality: ``1`` and ``1.0`` name the same
    counter, while ``"1"`` and ``b"1"`` are distinct keys.
    """
    if key is None:
        raise InvalidKeyError("key is required")
    if isinstance(key, bool) or not isinstance(key, SCALAR_KEY_TYPES):
        raise InvalidKeyError(
            "key must be a scalar identifier",
            {"type": type(key).__name__}
        )
    if isinstance(key, (str, bytes)) and len(key) == 0:
        raise InvalidKeyError("key must not be empty")
    if isinstance(key, float) and math.isnan(key):
        raise InvalidKeyError("key must not be NaN")
    return key
