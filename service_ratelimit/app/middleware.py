"""
FastAPI adapter for the request limiter.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, Response

from shared.errors import CounterRetiredError, RateLimiterException, RateLimitExceededError
from shared.logging import get_logger

from .limiter import DEFAULT_KEY_PATH, KeyExtractor, RequestLimiter
from .scheduling import SchedulerShutdownError


def client_ip_extractor(request: Request) -> str:
    """Extract the caller IP from standard headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if isinstance(forwarded_for, str) and forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if isinstance(real_ip, str) and real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


class RateLimitMiddleware:
    """Rate limiting dependency for FastAPI routes.

    A limiter left on the default ``ip`` key path is keyed by client IP,
    since a Starlette request has no ``ip`` field of its own. Any other key
    path or extractor configured on the limiter is used as is.
    """

    def __init__(self, limiter: RequestLimiter, key_extractor: Optional[KeyExtractor] = None):
        self.limiter = limiter
        if key_extractor is None and limiter.key_path == DEFAULT_KEY_PATH:
            key_extractor = client_ip_extractor
        self.key_extractor = key_extractor
        self.logger = get_logger("ratelimit.middleware")

    async def check_request(self, request: Request) -> Dict[str, Any]:
        """Check rate limit for request."""
        try:
            if self.key_extractor is None:
                decision = self.limiter.check_request(request)
            else:
                decision = self.limiter.check_key(self.key_extractor(request))
            return decision.model_dump()
        except RateLimiterException:
            raise
        except Exception as e:
            self.logger.error("Rate limiter middleware error", error=str(e))
            limit = self.limiter.limit
            return {
                "allowed": True,
                "key": None,
                "limit": limit,
                "remaining": limit,
                "error": str(e)
            }

    async def __call__(self, request: Request, response: Response) -> Dict[str, Any]:
        try:
            result = await self.check_request(request)
        except (CounterRetiredError, SchedulerShutdownError) as exc:
            self.logger.warning("Rate limiter unavailable", code=exc.code)
            raise HTTPException(status_code=503, detail=exc.to_response().model_dump()) from exc
        except RateLimiterException as exc:
            raise HTTPException(status_code=400, detail=exc.to_response().model_dump()) from exc

        if not result.get("allowed", False):
            exc = RateLimitExceededError(details={
                "limit": result.get("limit"),
                "remaining": max(0, result.get("remaining") or 0),
            })
            raise HTTPException(
                status_code=429,
                detail=exc.to_response().model_dump(),
                headers=self._rate_limit_headers(result)
            )

        response.headers.update(self._rate_limit_headers(result))
        return result

    def _rate_limit_headers(self, result: Dict[str, Any]) -> Dict[str, str]:
        """Propagate rate limiting metadata via standard headers."""
        headers = {}
        limit = result.get("limit")
        remaining = result.get("remaining")

        if limit is not None:
            headers["X-RateLimit-Limit"] = str(limit)
        if remaining is not None:
            headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        return headers
