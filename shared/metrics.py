"""
Shared metrics configuration for the rate-limiting core.
"""

from typing import Dict, Any, Optional
import threading

from prometheus_client import Counter, Gauge, CollectorRegistry, REGISTRY


class RateLimitMetrics:
    """Centralized Prometheus metrics for limiters and their registries."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up rate limiting metrics."""
        self._metrics["decisions_total"] = Counter(
            "ratelimit_decisions_total",
            "Total admission decisions",
            ["limiter", "outcome"],
            registry=self.registry
        )

        self._metrics["counters_created_total"] = Counter(
            "ratelimit_counters_created_total",
            "Total per-key counters created",
            ["limiter"],
            registry=self.registry
        )

        self._metrics["evictions_total"] = Counter(
            "ratelimit_evictions_total",
            "Total idle counters evicted",
            ["limiter"],
            registry=self.registry
        )

        self._metrics["active_keys"] = Gauge(
            "ratelimit_active_keys",
            "Number of keys with live counters",
            ["limiter"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_decision(self, limiter: str, allowed: bool):
        """Record an admission decision."""
        outcome = "allowed" if allowed else "rejected"
        self._metrics["decisions_total"].labels(limiter=limiter, outcome=outcome).inc()

    def record_counter_created(self, limiter: str):
        """Record lazy creation of a per-key counter."""
        self._metrics["counters_created_total"].labels(limiter=limiter).inc()

    def record_evictions(self, limiter: str, count: int):
        """Record idle counters removed by a sweep."""
        if count > 0:
            self._metrics["evictions_total"].labels(limiter=limiter).inc(count)

    def set_active_keys(self, limiter: str, count: int):
        """Set the number of live keys for a limiter."""
        self._metrics["active_keys"].labels(limiter=limiter).set(count)


_default_metrics: Optional[RateLimitMetrics] = None
_default_lock = threading.Lock()


def get_metrics() -> RateLimitMetrics:
    """Get the process-wide collector bound to the default Prometheus registry."""
    global _default_metrics
    with _default_lock:
        if _default_metrics is None:
            _default_metrics = RateLimitMetrics()
        return _default_metrics
