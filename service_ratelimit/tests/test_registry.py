"""
Unit tests for the counter registries.
"""

import threading

import pytest

from service_ratelimit.app.counters import DecrementPolicy
from service_ratelimit.app.registry import TokenBucketRegistry, WindowedRegistry, validate_key
from service_ratelimit.app.scheduling import ManualClock
from shared.errors import CounterRetiredError, InsufficientCapacityError, InvalidKeyError


class TestValidateKey:
    """Test cases for key validation."""

    @pytest.mark.parametrize("key", ["10.0.0.1", "user-1", b"raw", 42, 0, 3.5])
    def test_scalar_keys_accepted(self, key):
        assert validate_key(key) == key

    @pytest.mark.parametrize("key", [None, "", b"", True, False, float("nan"), {"ip": 1}, ["a"], ("a",), object(), len])
    def test_invalid_keys_rejected(self, key):
        with pytest.raises(InvalidKeyError) as exc_info:
            validate_key(key)
        assert exc_info.value.code == "INVALID_KEY"


class TestTokenBucketRegistry:
    """Test cases for TokenBucketRegistry."""

    @pytest.fixture
    def registry(self, scheduler, metrics):
        """Create a strict registry without scheduled eviction."""
        registry = TokenBucketRegistry(
            limit=20,
            increment=2,
            tick_interval_ms=5000,
            scheduler=scheduler,
            evict_on_schedule=False,
            name="api",
            metrics=metrics
        )
        yield registry
        registry.destroy_all()

    def test_same_key_same_counter(self, registry):
        first = registry.get_or_create("10.0.0.1")
        assert registry.get_or_create("10.0.0.1") is first
        assert len(registry) == 1

    def test_keys_are_isolated(self, registry):
        """Test different keys get independent buckets."""
        registry.consume("a", 20)
        with pytest.raises(InsufficientCapacityError):
            registry.consume("a")

        assert registry.remaining("b") == 20
        assert registry.consume("b") == 19
        assert registry.get_or_create("a") is not registry.get_or_create("b")

    @pytest.mark.parametrize("key", [None, "", {"ip": "1.2.3.4"}, lambda: "k"])
    def test_invalid_key(self, registry, key):
        with pytest.raises(InvalidKeyError):
            registry.get_or_create(key)
        with pytest.raises(InvalidKeyError):
            registry.consume(key)
        assert len(registry) == 0

    def test_remaining_creates_unseen_key(self, registry):
        assert "fresh" not in registry
        assert registry.remaining("fresh") == 20
        assert "fresh" in registry

    def test_shared_configuration(self, registry):
        bucket = registry.get_or_create("k")
        assert (bucket.limit, bucket.increment, bucket.tick_interval_ms) == (20, 2, 5000)
        assert bucket.policy is DecrementPolicy.STRICT

    def test_replenishment_per_key(self, registry, scheduler):
        registry.consume("k", 20)
        scheduler.advance(5000)
        assert registry.remaining("k") == 2

    def test_try_consume(self, registry):
        assert registry.try_consume("k", 20) is True
        assert registry.try_consume("k") is False
        assert registry.admit("k") is False

    def test_evict_idle(self, registry):
        """Test a sweep removes fully recovered buckets and keeps the rest."""
        idle_a = registry.get_or_create("a")
        idle_b = registry.get_or_create("b")
        registry.consume("c", 5)

        evicted = registry.evict_idle()

        assert sorted(evicted) == ["a", "b"]
        assert registry.keys() == ["c"]
        assert idle_a.destroyed and idle_b.destroyed
        assert not registry.get_or_create("c").destroyed

    def test_evicted_key_gets_fresh_bucket(self, registry):
        bucket = registry.get_or_create("a")
        registry.evict_idle()

        assert registry.consume("a") == 19
        assert registry.get_or_create("a") is not bucket

    def test_retired_counter_is_replaced(self, registry):
        """Test a caller racing an eviction lands on a new bucket."""
        bucket = registry.get_or_create("a")
        bucket.retire_if_full()

        assert registry.consume("a") == 19
        assert registry.get_or_create("a") is not bucket

    def test_recovered_bucket_evicted_after_refill(self, registry, scheduler):
        registry.consume("a", 4)
        assert registry.evict_idle() == []

        scheduler.advance(10000)
        assert registry.evict_idle() == ["a"]
        assert len(registry) == 0

    def test_remove(self, registry):
        bucket = registry.get_or_create("a")
        assert registry.remove("a") is True
        assert registry.remove("a") is False
        assert bucket.destroyed

    def test_destroy_all(self, registry, scheduler):
        """Test shutdown cancels every timer and can be repeated."""
        buckets = [registry.get_or_create(key) for key in ("a", "b", "c")]
        assert scheduler.pending() == 3

        registry.destroy_all()
        registry.destroy_all()

        assert len(registry) == 0
        assert all(bucket.destroyed for bucket in buckets)
        assert scheduler.pending() == 0
        assert registry.closed
        with pytest.raises(CounterRetiredError):
            registry.get_or_create("a")

    def test_concurrent_creation_collapses(self, registry):
        """Test racing lookups of an unseen key create exactly one bucket."""
        barrier = threading.Barrier(16)
        results = []
        lock = threading.Lock()

        def lookup():
            barrier.wait()
            bucket = registry.get_or_create("hot-key")
            with lock:
                results.append(bucket)

        threads = [threading.Thread(target=lookup) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 16
        assert len({id(bucket) for bucket in results}) == 1
        assert len(registry) == 1

    def test_concurrent_consume_is_serialized(self, registry):
        """Test parallel consumers never overdraw a strict bucket."""
        admitted = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                allowed = registry.try_consume("shared")
                with lock:
                    admitted.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert admitted.count(True) == 20
        assert registry.remaining("shared") == 0

    def test_metrics(self, registry, metrics):
        registry.consume("a", 20)
        with pytest.raises(InsufficientCapacityError):
            registry.consume("a")
        registry.get_or_create("b")
        registry.evict_idle()

        assert metrics.get_metric("decisions_total") is not None
        assert metrics.get_metric("unknown") is None

        sample = metrics.registry.get_sample_value
        assert sample("ratelimit_decisions_total", {"limiter": "api", "outcome": "allowed"}) == 1
        assert sample("ratelimit_decisions_total", {"limiter": "api", "outcome": "rejected"}) == 1
        assert sample("ratelimit_counters_created_total", {"limiter": "api"}) == 2
        assert sample("ratelimit_evictions_total", {"limiter": "api"}) == 1
        assert sample("ratelimit_active_keys", {"limiter": "api"}) == 1

    def test_stopped_scheduler_retires_registry(self, registry, scheduler):
        registry.consume("a", 5)
        scheduler.shutdown()

        with pytest.raises(CounterRetiredError):
            registry.remaining("a")
        with pytest.raises(CounterRetiredError):
            registry.consume("b")
        assert registry.closed
        assert len(registry) == 0

    def test_equal_numeric_keys_share_a_counter(self, registry):
        registry.consume(1, 3)
        assert registry.get_or_create(1.0) is registry.get_or_create(1)
        assert registry.remaining(1.0) == 17
        assert registry.remaining("1") == 20

    def test_stats(self, registry):
        registry.get_or_create("a")
        stats = registry.stats()
        assert stats["limiter"] == "api"
        assert stats["active_keys"] == 1
        assert stats["policy"] == "strict"
        assert stats["algorithm"] == "token_bucket"


class TestScheduledEviction:
    """Test cases for the eviction schedule."""

    def test_sweep_runs_on_schedule(self, scheduler, metrics):
        registry = TokenBucketRegistry(
            limit=5,
            tick_interval_ms=1000,
            eviction_interval_ms=3000,
            scheduler=scheduler,
            metrics=metrics
        )
        registry.get_or_create("idle")
        registry.consume("busy", 5)

        scheduler.advance(3000)

        assert registry.keys() == ["busy"]
        registry.destroy_all()
        assert scheduler.pending() == 0

    def test_sweep_defaults_to_tick_interval(self, scheduler, metrics):
        registry = TokenBucketRegistry(tick_interval_ms=700, scheduler=scheduler, metrics=metrics)
        assert registry.eviction_interval_ms == 700
        assert scheduler.pending() == 1
        registry.destroy_all()

    def test_clamped_registry(self, scheduler, metrics):
        registry = TokenBucketRegistry(
            policy=DecrementPolicy.CLAMPED,
            scheduler=scheduler,
            evict_on_schedule=False,
            metrics=metrics
        )
        assert registry.tick_interval_ms == 500
        assert registry.consume("k", 30) == -5
        assert registry.try_consume("k") is False
        registry.destroy_all()


class TestWindowedRegistry:
    """Test cases for WindowedRegistry."""

    @pytest.fixture
    def clock(self):
        """Create a virtual clock."""
        return ManualClock()

    @pytest.fixture
    def registry(self, clock, metrics):
        """Create a windowed registry of 20 per 5s."""
        return WindowedRegistry(limit=20, window_ms=5000, clock=clock, name="jobs", metrics=metrics)

    def test_check_eligible(self, registry, clock):
        results = [registry.check_eligible("worker-1") for _ in range(21)]
        assert results[:20] == [True] * 20
        assert results[20] is False

        assert registry.check_eligible("worker-2") is True

        clock.advance(5001)
        assert registry.check_eligible("worker-1") is True
        assert registry.get_or_create("worker-1").requests_in_window == 1

    def test_remaining(self, registry, clock):
        registry.check_eligible("k")
        assert registry.remaining("k") == 19
        clock.advance(2000)
        assert registry.remaining_in_window("k") == 3000

    def test_invalid_key(self, registry):
        with pytest.raises(InvalidKeyError):
            registry.check_eligible(None)

    def test_destroy_all(self, registry):
        counter = registry.get_or_create("k")
        registry.destroy_all()
        registry.destroy_all()
        assert counter.destroyed
        assert len(registry) == 0
