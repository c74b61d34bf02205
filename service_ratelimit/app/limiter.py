"""
Request-level façade over a counter registry.

The façade pulls a key out of an inbound request record with a pluggable
extractor, asks the registry for a decision and reports it. It never
decides transport-level responses; see ``middleware`` for the FastAPI
adapter.
"""

from collections.abc import Mapping, Sequence
from typing import Any, Callable, Hashable, Optional, Union

from pydantic import BaseModel

from shared.errors import ConfigurationError, RateLimitExceededError, ValidationError
from shared.logging import get_logger

from .registry import TokenBucketRegistry, WindowedRegistry, validate_key

DEFAULT_KEY_PATH = "ip"

KeyExtractor = Callable[[Any], Any]
Registry = Union[TokenBucketRegistry, WindowedRegistry]


def dotted_path_extractor(path: str = DEFAULT_KEY_PATH) -> KeyExtractor:
    """Build an extractor that follows ``path`` through mappings, attributes and list indexes.

    ``"headers.x-client-id"`` reads ``request["headers"]["x-client-id"]`` (or
    the equivalent attributes); ``"forwarded.0"`` reads the first list item.
    Any missing segment yields ``None``.
    """
    segments = path.split(".") if path else []
    if not segments or any(not segment for segment in segments):
        raise ConfigurationError("key path must be a non-empty dotted path", {"path": path})

    def extract(record: Any) -> Any:
        value = record
        for segment in segments:
            if value is None:
                return None
            if isinstance(value, Mapping):
                value = value.get(segment)
            elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
                if not segment.isdigit():
                    return None
                index = int(segment)
                value = value[index] if index < len(value) else None
            else:
                value = getattr(value, segment, None)
        return value

    extract.path = path  # type: ignore[attr-defined]
    return extract


class RateLimitDecision(BaseModel):
    """Outcome of one admission check."""

    allowed: bool
    key: str
    limit: int
    remaining: int


class RequestLimiter:
    """Turns a request record into an allow/deny decision for its key."""

    def __init__(self,
                 registry: Registry,
                 key_extractor: Optional[KeyExtractor] = None,
                 key_path: str = DEFAULT_KEY_PATH):
        self.registry = registry
        # None when keys come from a caller-supplied extractor.
        self.key_path: Optional[str] = None if key_extractor else key_path
        self.key_extractor = key_extractor or dotted_path_extractor(key_path)
        self.logger = get_logger(f"ratelimit.limiter.{registry.name}")

    @property
    def limit(self) -> int:
        return self.registry.limit

    def extract_key(self, request: Any) -> Hashable:
        if request is None:
            raise ValidationError("request is required")
        return validate_key(self.key_extractor(request))

    def check_request(self, request: Any) -> RateLimitDecision:
        """Record one unit of work for the request's key and report the decision."""
        return self.check_key(self.extract_key(request))

    def check_key(self, key: Any) -> RateLimitDecision:
        """Same as check_request() for a key the caller already extracted."""
        key = validate_key(key)
        allowed = self.registry.admit(key)
        remaining = self.registry.remaining(key)
        return RateLimitDecision(
            allowed=allowed,
            key=str(key),
            limit=self.registry.limit,
            remaining=remaining
        )

    def enforce(self, request: Any) -> RateLimitDecision:
        """Like check_request(), but raises when the request is not allowed."""
        decision = self.check_request(request)
        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                key=decision.key,
                limit=decision.limit,
                remaining=decision.remaining
            )
            raise RateLimitExceededError(details=decision.model_dump())
        return decision

    def shutdown(self) -> None:
        """Stop background replenishment and release all per-key state."""
        self.registry.destroy_all()
