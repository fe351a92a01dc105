from __future__ import annotations

import fnmatch
import json
import math
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis

from authgate.logging import get_logger

logger = get_logger(__name__)


class CacheAdapter(Protocol):
    """Key-value store with TTLs, atomic counters and sorted sets.

    Values are JSON documents. ``ttl`` follows Redis conventions: ``-2`` for a
    missing key and ``-1`` for a key without expiry.
    """

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool: ...

    async def get(self, key: str) -> Any: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def getdel(self, key: str) -> Any: ...

    async def incr(self, key: str, amount: int = 1) -> int: ...

    async def incr_with_ttl(self, key: str, ttl: int) -> Tuple[int, int]:
        """Increment a counter, starting its TTL only when the key is new.

        Returns the new count and the seconds left on the counter.
        """
        ...

    async def record_attempt(
        self, key: str, max_attempts: int
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Count one attempt against a JSON record's ``attempts`` field.

        Returns ``(record, False)`` with the updated record, ``(None, False)``
        when the key is missing and ``(None, True)`` when this attempt went
        past ``max_attempts``, in which case the record is deleted. The
        record keeps its remaining TTL.
        """
        ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def zadd(self, key: str, member: str, score: float) -> int: ...

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int: ...

    async def zcard(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def _loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        # Counters and foreign writers may store plain strings
        return raw


class RedisCacheAdapter:
    """Redis-backed adapter over ``redis.asyncio``."""

    # Keys removed per DEL round trip during pattern deletes
    _DELETE_BATCH = 500

    # KEYS[1]=counter, ARGV[1]=window seconds. The TTL is only applied when
    # the counter has none, so later hits never extend the window.
    _INCR_WITH_TTL_SCRIPT = """
    local current = redis.call('INCR', KEYS[1])
    local ttl = redis.call('TTL', KEYS[1])
    if ttl < 0 then
        redis.call('EXPIRE', KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {current, ttl}
    """

    # KEYS[1]=record, ARGV[1]=max attempts. Returns {0, ''} for a missing
    # key, {-1, ''} once the budget is spent, else {attempts, record}.
    _RECORD_ATTEMPT_SCRIPT = """
    local raw = redis.call('GET', KEYS[1])
    if not raw then
        return {0, ''}
    end
    local record = cjson.decode(raw)
    local attempts = (tonumber(record['attempts']) or 0) + 1
    if attempts > tonumber(ARGV[1]) then
        redis.call('DEL', KEYS[1])
        return {-1, ''}
    end
    record['attempts'] = attempts
    local encoded = cjson.encode(record)
    redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
    return {attempts, encoded}
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)
        self._record_attempt = self.client.register_script(self._RECORD_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if ttl is not None and ttl <= 0:
            await self.client.delete(key)
            return False
        return bool(await self.client.set(key, _dumps(value), ex=ttl))

    async def get(self, key: str) -> Any:
        return _loads(await self.client.get(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=pattern, count=200):
            batch.append(key)
            if len(batch) >= self._DELETE_BATCH:
                deleted += int(await self.client.delete(*batch))
                batch = []
        if batch:
            deleted += int(await self.client.delete(*batch))
        return deleted

    async def getdel(self, key: str) -> Any:
        return _loads(await self.client.getdel(key))

    async def incr(self, key: str, amount: int = 1) -> int:
        return int(await self.client.incrby(key, amount))

    async def incr_with_ttl(self, key: str, ttl: int) -> Tuple[int, int]:
        current, remaining = await self._incr_with_ttl(keys=[key], args=[ttl])
        return int(current), int(remaining)

    async def record_attempt(
        self, key: str, max_attempts: int
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        status, encoded = await self._record_attempt(keys=[key], args=[max_attempts])
        status = int(status)
        if status == 0:
            return None, False
        if status < 0:
            return None, True
        return json.loads(encoded), False

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self.client.expire(key, ttl))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def zadd(self, key: str, member: str, score: float) -> int:
        return int(await self.client.zadd(key, {member: score}))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return int(await self.client.zremrangebyscore(key, min_score, max_score))

    async def zcard(self, key: str) -> int:
        return int(await self.client.zcard(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class MemoryCacheAdapter:
    """In-process adapter with Redis-compatible TTL semantics.

    Used in test mode and when Redis is unavailable in development. Values are
    stored serialized so callers never share mutable state with the store.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return raw

    def _expires(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl is not None else None

    def _all_keys(self) -> list[str]:
        keys = [key for key in list(self._values) if self._live(key) is not None]
        return keys + [key for key, members in self._zsets.items() if members]

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if ttl is not None and ttl <= 0:
                self._values.pop(key, None)
                return False
            self._values[key] = (_dumps(value), self._expires(ttl))
            return True

    async def get(self, key: str) -> Any:
        with self._lock:
            return _loads(self._live(key))

    async def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    self._values.pop(key, None)
                    deleted += 1
                elif self._zsets.pop(key, None):
                    deleted += 1
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [key for key in self._all_keys() if fnmatch.fnmatchcase(key, pattern)]
        return await self.delete(*matched)

    async def getdel(self, key: str) -> Any:
        with self._lock:
            raw = self._live(key)
            self._values.pop(key, None)
            return _loads(raw)

    async def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            raw = self._live(key)
            current = _loads(raw) if raw is not None else 0
            if not isinstance(current, int) or isinstance(current, bool):
                raise ValueError("value is not an integer or out of range")
            expires_at = self._values[key][1] if raw is not None else None
            current += amount
            self._values[key] = (_dumps(current), expires_at)
            return current

    async def incr_with_ttl(self, key: str, ttl: int) -> Tuple[int, int]:
        with self._lock:
            raw = self._live(key)
            current = _loads(raw) if raw is not None else 0
            if not isinstance(current, int) or isinstance(current, bool):
                raise ValueError("value is not an integer or out of range")
            expires_at = self._values[key][1] if raw is not None else None
            if expires_at is None:
                expires_at = self._clock() + ttl
            current += 1
            self._values[key] = (_dumps(current), expires_at)
            return current, max(0, math.ceil(expires_at - self._clock()))

    async def record_attempt(
        self, key: str, max_attempts: int
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        with self._lock:
            raw = self._live(key)
            if raw is None:
                return None, False
            record = _loads(raw)
            if not isinstance(record, dict):
                raise ValueError("value is not a JSON object")
            attempts = int(record.get("attempts") or 0) + 1
            if attempts > max_attempts:
                self._values.pop(key, None)
                return None, True
            record["attempts"] = attempts
            self._values[key] = (_dumps(record), self._values[key][1])
            return record, False

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            raw = self._live(key)
            if raw is None:
                return False
            if ttl <= 0:
                self._values.pop(key, None)
                return True
            self._values[key] = (raw, self._expires(ttl))
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -1 if self._zsets.get(key) else -2
            expires_at = self._values[key][1]
            if expires_at is None:
                return -1
            return max(0, math.ceil(expires_at - self._clock()))

    async def zadd(self, key: str, member: str, score: float) -> int:
        with self._lock:
            members = self._zsets.setdefault(key, {})
            added = 0 if member in members else 1
            members[member] = score
            return added

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        with self._lock:
            members = self._zsets.get(key, {})
            doomed = [m for m, score in members.items() if min_score <= score <= max_score]
            for member in doomed:
                members.pop(member, None)
            return len(doomed)

    async def zcard(self, key: str) -> int:
        with self._lock:
            return len(self._zsets.get(key, {}))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._zsets.clear()


__all__ = ["CacheAdapter", "MemoryCacheAdapter", "RedisCacheAdapter"]
