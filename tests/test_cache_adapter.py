"""Tests for the in-memory cache adapter and the breaker-guarded cache wrapper."""

import pytest

from authgate.resilience.circuit_breaker import BreakerConfig, BreakerSet, BreakerState, CircuitBreaker
from authgate.service.errors import DependencyUnavailableError
from authgate.storage.cache import MemoryCacheAdapter
from authgate.storage.resilient import ResilientCache, ResilientDataAccess


@pytest.fixture
def cache(clock):
    return MemoryCacheAdapter(clock=clock.monotonic)


class DownCache(MemoryCacheAdapter):
    """Adapter whose every call fails like a refused connection."""

    async def get(self, key):
        raise ConnectionRefusedError("connection refused")

    async def set(self, key, value, ttl=None):
        raise ConnectionRefusedError("connection refused")

    async def delete(self, *keys):
        raise ConnectionRefusedError("connection refused")

    async def ping(self):
        raise ConnectionRefusedError("connection refused")


class TestMemoryCacheAdapter:
    async def test_set_get_roundtrips_json(self, cache):
        await cache.set("k", {"a": [1, 2]}, 10)
        assert await cache.get("k") == {"a": [1, 2]}

    async def test_values_expire(self, cache, clock):
        await cache.set("k", "v", 5)
        clock.advance(4)
        assert await cache.ttl("k") == 1
        clock.advance(1)
        assert await cache.get("k") is None
        assert await cache.ttl("k") == -2

    async def test_ttl_for_key_without_expiry(self, cache):
        await cache.set("k", "v")
        assert await cache.ttl("k") == -1

    async def test_non_positive_ttl_removes_key(self, cache):
        await cache.set("k", "v", 10)
        assert await cache.set("k", "v", 0) is False
        assert await cache.get("k") is None

    async def test_incr_preserves_expiry(self, cache, clock):
        assert await cache.incr("n") == 1
        await cache.expire("n", 10)
        assert await cache.incr("n", 2) == 3
        clock.advance(10)
        assert await cache.get("n") is None

    async def test_incr_rejects_non_integer(self, cache):
        await cache.set("k", {"x": 1})
        with pytest.raises(ValueError):
            await cache.incr("k")

    async def test_getdel_returns_once(self, cache):
        await cache.set("k", "v", 10)
        assert await cache.getdel("k") == "v"
        assert await cache.getdel("k") is None

    async def test_delete_pattern(self, cache):
        await cache.set("p:refresh_tokens:u1:a", 1, 10)
        await cache.set("p:refresh_tokens:u1:b", 1, 10)
        await cache.set("p:refresh_tokens:u2:a", 1, 10)
        assert await cache.delete_pattern("p:refresh_tokens:u1:*") == 2
        assert await cache.get("p:refresh_tokens:u2:a") == 1

    async def test_sorted_set_window(self, cache):
        await cache.zadd("z", "a", 1.0)
        await cache.zadd("z", "b", 5.0)
        assert await cache.zadd("z", "a", 6.0) == 0
        assert await cache.zremrangebyscore("z", float("-inf"), 5.0) == 1
        assert await cache.zcard("z") == 1

    async def test_expire_missing_key(self, cache):
        assert await cache.expire("missing", 10) is False

    async def test_incr_with_ttl_keeps_first_window(self, cache, clock):
        assert await cache.incr_with_ttl("w", 60) == (1, 60)
        clock.advance(20)
        assert await cache.incr_with_ttl("w", 60) == (2, 40)
        clock.advance(40)
        assert await cache.incr_with_ttl("w", 60) == (1, 60)

    async def test_incr_with_ttl_adds_expiry_to_bare_counter(self, cache):
        await cache.incr("w")
        assert await cache.incr_with_ttl("w", 30) == (2, 30)

    async def test_record_attempt_counts_and_keeps_ttl(self, cache, clock):
        assert await cache.record_attempt("missing", 3) == (None, False)
        await cache.set("otp", {"otp": "123456", "attempts": 0}, 300)
        clock.advance(100)
        record, exhausted = await cache.record_attempt("otp", 2)
        assert record == {"otp": "123456", "attempts": 1}
        assert exhausted is False
        assert await cache.ttl("otp") == 200
        assert (await cache.record_attempt("otp", 2))[0]["attempts"] == 2
        assert await cache.record_attempt("otp", 2) == (None, True)
        assert await cache.get("otp") is None

    async def test_record_attempt_rejects_non_object(self, cache):
        await cache.set("k", "plain", 10)
        with pytest.raises(ValueError):
            await cache.record_attempt("k", 3)


class TestResilientCache:
    async def test_failures_open_cache_breaker(self, clock):
        breaker = CircuitBreaker("cache", BreakerConfig(failure_threshold=2), clock=clock.monotonic)
        guarded = ResilientCache(DownCache(clock=clock.monotonic), breaker)
        for _ in range(2):
            with pytest.raises(DependencyUnavailableError):
                await guarded.get("k")
        assert breaker.state is BreakerState.OPEN

    async def test_passes_through_when_healthy(self, clock):
        breaker = CircuitBreaker("cache", clock=clock.monotonic)
        guarded = ResilientCache(MemoryCacheAdapter(clock=clock.monotonic), breaker)
        assert await guarded.set("k", 1, 10) is True
        assert await guarded.get("k") == 1


class TestResilientDataAccess:
    async def test_query_without_database_is_unavailable(self, settings, clock):
        data = ResilientDataAccess(None, MemoryCacheAdapter(clock=clock.monotonic), BreakerSet.from_settings(settings))
        with pytest.raises(DependencyUnavailableError):
            await data.query("SELECT 1")

    async def test_cache_helpers_degrade_to_defaults(self, settings, clock):
        data = ResilientDataAccess(None, DownCache(clock=clock.monotonic), BreakerSet.from_settings(settings))
        assert await data.cache_get("k", "fallback") == "fallback"
        assert await data.cache_set("k", 1) is False
        assert await data.cache_del("k") == 0

    async def test_health_check_reports_each_dependency(self, settings, clock):
        data = ResilientDataAccess(None, DownCache(clock=clock.monotonic), BreakerSet.from_settings(settings))
        report = await data.health_check()
        assert report["database"] == {"status": "not_configured"}
        assert report["cache"]["status"] == "unhealthy"
