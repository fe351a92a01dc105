from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import psycopg
from redis import exceptions as redis_exceptions

from authgate.logging import get_logger
from authgate.resilience.circuit_breaker import BreakerSet, CircuitBreaker
from authgate.service.errors import DependencyUnavailableError
from authgate.storage.cache import CacheAdapter
from authgate.storage.database import Database, Params, Queryable, Row

logger = get_logger(__name__)

T = TypeVar("T")

# Failures of the transport itself, as opposed to errors the store reports
# about the request (constraint violations, bad SQL)
_TRANSPORT_ERRORS = (
    OSError,
    psycopg.OperationalError,
    psycopg.InterfaceError,
    redis_exceptions.ConnectionError,
    redis_exceptions.TimeoutError,
)


async def _guarded(
    breaker: CircuitBreaker,
    label: str,
    operation: Callable[[], Awaitable[T]],
    fallback: Optional[Callable[[], Any]] = None,
) -> T:
    try:
        return await breaker.execute(operation, fallback)
    except _TRANSPORT_ERRORS as exc:
        logger.warning(
            "dependency_call_failed",
            dependency=breaker.name,
            operation=label,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise DependencyUnavailableError(
            f"{breaker.name} is temporarily unavailable",
            detail={"dependency": breaker.name},
        ) from exc


class ResilientCache:
    """Cache adapter whose every call goes through the cache breaker."""

    def __init__(self, adapter: CacheAdapter, breaker: CircuitBreaker) -> None:
        self.adapter = adapter
        self.breaker = breaker

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await _guarded(self.breaker, "set", lambda: self.adapter.set(key, value, ttl))

    async def get(self, key: str) -> Any:
        return await _guarded(self.breaker, "get", lambda: self.adapter.get(key))

    async def delete(self, *keys: str) -> int:
        return await _guarded(self.breaker, "delete", lambda: self.adapter.delete(*keys))

    async def delete_pattern(self, pattern: str) -> int:
        return await _guarded(
            self.breaker, "delete_pattern", lambda: self.adapter.delete_pattern(pattern)
        )

    async def getdel(self, key: str) -> Any:
        return await _guarded(self.breaker, "getdel", lambda: self.adapter.getdel(key))

    async def incr(self, key: str, amount: int = 1) -> int:
        return await _guarded(self.breaker, "incr", lambda: self.adapter.incr(key, amount))

    async def incr_with_ttl(self, key: str, ttl: int) -> Tuple[int, int]:
        return await _guarded(
            self.breaker, "incr_with_ttl", lambda: self.adapter.incr_with_ttl(key, ttl)
        )

    async def record_attempt(
        self, key: str, max_attempts: int
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        return await _guarded(
            self.breaker,
            "record_attempt",
            lambda: self.adapter.record_attempt(key, max_attempts),
        )

    async def expire(self, key: str, ttl: int) -> bool:
        return await _guarded(self.breaker, "expire", lambda: self.adapter.expire(key, ttl))

    async def ttl(self, key: str) -> int:
        return await _guarded(self.breaker, "ttl", lambda: self.adapter.ttl(key))

    async def zadd(self, key: str, member: str, score: float) -> int:
        return await _guarded(
            self.breaker, "zadd", lambda: self.adapter.zadd(key, member, score)
        )

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return await _guarded(
            self.breaker,
            "zremrangebyscore",
            lambda: self.adapter.zremrangebyscore(key, min_score, max_score),
        )

    async def zcard(self, key: str) -> int:
        return await _guarded(self.breaker, "zcard", lambda: self.adapter.zcard(key))

    async def ping(self) -> bool:
        return await _guarded(self.breaker, "ping", self.adapter.ping)

    async def close(self) -> None:
        await self.adapter.close()


class ResilientDataAccess:
    """Relational and cache access, each behind its own circuit breaker.

    Database calls without a fallback fail fast with
    ``DependencyUnavailableError`` while the breaker is open. The ``cache_*``
    helpers are best-effort: they log and return ``default`` when the cache is
    down, which turns a cache outage into a cache miss.
    """

    def __init__(
        self,
        database: Optional[Database],
        cache: CacheAdapter,
        breakers: BreakerSet,
    ) -> None:
        self.database = database
        self.breakers = breakers
        self.cache = ResilientCache(cache, breakers.cache)

    async def query(
        self,
        sql: str,
        params: Params = None,
        *,
        fallback: Optional[Callable[[], Any]] = None,
    ) -> List[Row]:
        if self.database is None:
            raise DependencyUnavailableError(
                "database is not configured", detail={"dependency": "database"}
            )
        return await _guarded(
            self.breakers.database,
            "query",
            lambda: self.database.query(sql, params),
            fallback,
        )

    async def transaction(self, fn: Callable[[Queryable], Awaitable[T]]) -> T:
        if self.database is None:
            raise DependencyUnavailableError(
                "database is not configured", detail={"dependency": "database"}
            )
        return await _guarded(
            self.breakers.database, "transaction", lambda: self.database.transaction(fn)
        )

    async def cache_get(self, key: str, default: Any = None) -> Any:
        try:
            value = await self.cache.get(key)
        except Exception as exc:
            logger.warning("cache_get_degraded", key=key, error=str(exc))
            return default
        return default if value is None else value

    async def cache_set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            return await self.cache.set(key, value, ttl)
        except Exception as exc:
            logger.warning("cache_set_degraded", key=key, error=str(exc))
            return False

    async def cache_del(self, *keys: str) -> int:
        try:
            return await self.cache.delete(*keys)
        except Exception as exc:
            logger.warning("cache_del_degraded", keys=list(keys), error=str(exc))
            return 0

    async def health_check(self) -> dict[str, Any]:
        """Check both dependencies without raising."""
        report: dict[str, Any] = {}
        if self.database is None:
            report["database"] = {"status": "not_configured"}
        else:
            try:
                await self.query("SELECT 1 AS health_check")
                report["database"] = {"status": "healthy"}
            except Exception as exc:
                report["database"] = {"status": "unhealthy", "error": type(exc).__name__}
        try:
            await self.cache.ping()
            report["cache"] = {"status": "healthy"}
        except Exception as exc:
            report["cache"] = {"status": "unhealthy", "error": type(exc).__name__}
        return report

    async def close(self) -> None:
        if self.database is not None:
            await self.database.close()
        await self.cache.close()


__all__ = ["ResilientCache", "ResilientDataAccess"]
