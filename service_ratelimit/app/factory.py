"""
Build registries and limiters from settings.
"""

from typing import Optional

from shared.config import RateLimitSettings, get_settings
from shared.logging import configure_logging, get_logger, set_limiter_context
from shared.metrics import RateLimitMetrics

from .limiter import KeyExtractor, Registry, RequestLimiter
from .registry import TokenBucketRegistry, WindowedRegistry
from .scheduling import Clock, Scheduler

logger = get_logger("ratelimit.factory")


def create_registry(settings: Optional[RateLimitSettings] = None,
                    scheduler: Optional[Scheduler] = None,
                    clock: Optional[Clock] = None,
                    metrics: Optional[RateLimitMetrics] = None) -> Registry:
    """Create the registry selected by ``settings.algorithm``."""
    settings = settings or get_settings()

    if settings.algorithm == "windowed":
        if clock is None and scheduler is not None:
            clock = scheduler.clock
        return WindowedRegistry(
            limit=settings.window_limit,
            window_ms=settings.window_ms,
            clock=clock,
            name=settings.limiter_name,
            metrics=metrics
        )

    return TokenBucketRegistry(
        limit=settings.limit,
        increment=settings.increment,
        tick_interval_ms=settings.tick_interval_ms,
        policy=settings.policy,
        scheduler=scheduler,
        eviction_interval_ms=settings.eviction_interval_ms,
        evict_on_schedule=settings.evict_on_schedule,
        name=settings.limiter_name,
        metrics=metrics
    )


def create_limiter(settings: Optional[RateLimitSettings] = None,
                   scheduler: Optional[Scheduler] = None,
                   key_extractor: Optional[KeyExtractor] = None,
                   clock: Optional[Clock] = None,
                   metrics: Optional[RateLimitMetrics] = None) -> RequestLimiter:
    settings = settings or get_settings()
    registry = create_registry(settings, scheduler=scheduler, clock=clock, metrics=metrics)
    return RequestLimiter(registry, key_extractor=key_extractor, key_path=settings.key_path)


def bootstrap(settings: Optional[RateLimitSettings] = None, **kwargs) -> RequestLimiter:
    """Configure logging and build a limiter from the environment."""
    settings = settings or get_settings()
    configure_logging("ratelimit", settings.log_level)
    set_limiter_context(settings.limiter_name)

    limiter = create_limiter(settings, **kwargs)
    logger.info(
        "Rate limiter configured",
        limiter=settings.limiter_name,
        algorithm=settings.algorithm,
        env=settings.env
    )
    return limiter
