"""
Shared error handling for the rate-limiting core.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RateLimiterException(Exception):
    """Base exception for the rate-limiting core."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class InvalidKeyError(RateLimiterException):
    """Missing, empty or non-scalar rate-limit key."""

    def __init__(self, message: str = "Invalid rate limit key", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_KEY", message, details)


class InsufficientCapacityError(RateLimiterException):
    """Strict token bucket could not cover the requested amount."""

    def __init__(self, requested: int, available: int, message: str = "Insufficient capacity"):
        super().__init__(
            "INSUFFICIENT_CAPACITY",
            message,
            {"requested": requested, "available": available}
        )
        self.requested = requested
        self.available = available


class CounterRetiredError(RateLimiterException):
    """Counter was destroyed before the call reached it."""

    def __init__(self, message: str = "Counter has been destroyed", details: Optional[Dict[str, Any]] = None):
        super().__init__("COUNTER_RETIRED", message, details)


class ValidationError(RateLimiterException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ConfigurationError(RateLimiterException):
    """Invalid limiter configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class RateLimitExceededError(RateLimiterException):
    """Rate limiting errors raised by the request façade."""

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_EXCEEDED", message, details)
