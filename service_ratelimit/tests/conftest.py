"""
Shared fixtures for rate limiter unit tests.
"""

import pytest
from prometheus_client import CollectorRegistry

from service_ratelimit.app.scheduling import ManualScheduler
from shared.metrics import RateLimitMetrics


@pytest.fixture
def scheduler():
    """Virtual-time scheduler; ticks only fire on advance()."""
    scheduler = ManualScheduler()
    yield scheduler
    scheduler.shutdown()


@pytest.fixture
def metrics():
    """Metrics bound to an isolated Prometheus registry."""
    return RateLimitMetrics(CollectorRegistry())
