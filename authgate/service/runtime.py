from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.resilience.circuit_breaker import BreakerSet
from authgate.service.auth import AuthService
from authgate.service.events import EventBroker, EventPublisher, MemoryEventBroker, RedisEventBroker
from authgate.service.passwords import Argon2PasswordHasher
from authgate.service.tokens import TokenService
from authgate.storage.cache import CacheAdapter, MemoryCacheAdapter, RedisCacheAdapter
from authgate.storage.credentials import CredentialStore
from authgate.storage.database import PostgresDatabase
from authgate.storage.resilient import ResilientDataAccess
from authgate.storage.users import MemoryUserStore, PostgresUserStore, UserStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide service graph for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.breakers = BreakerSet.from_settings(self.settings)

        cache_adapter = self._build_cache()
        self.cache_is_memory = isinstance(cache_adapter, MemoryCacheAdapter)

        database = None
        if not self.settings.use_memory_store:
            database = PostgresDatabase(
                self.settings.database_url,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
                statement_timeout_seconds=self.settings.db_timeout_seconds,
                application_name=self.settings.service_name,
            )
        self.data = ResilientDataAccess(database, cache_adapter, self.breakers)
        self.users: UserStore = (
            MemoryUserStore() if database is None else PostgresUserStore(self.data)
        )
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if database is None else "postgres",
            database_url=_mask_url_password(self.settings.database_url) if database else None,
        )

        self.credentials = CredentialStore(self.data.cache, self.settings)
        self.tokens = TokenService(self.credentials, self.users, self.settings)
        self.hasher = Argon2PasswordHasher()

        broker: EventBroker
        if self.cache_is_memory:
            broker = MemoryEventBroker()
        else:
            broker = RedisEventBroker(
                self.settings.redis_url, socket_timeout=self.settings.broker_timeout_seconds
            )
        self.events = EventPublisher(broker, self.breakers.broker, self.settings)

        self.auth = AuthService(
            self.users,
            self.tokens,
            self.credentials,
            self.hasher,
            self.events,
            self.settings,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=not self.cache_is_memory,
            event_channel=self.settings.event_channel,
        )

    def _build_cache(self) -> CacheAdapter:
        if self.settings.use_memory_store:
            return MemoryCacheAdapter()
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCacheAdapter(
                    self.settings.redis_url, socket_timeout=self.settings.cache_timeout_seconds
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, refresh tokens and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemoryCacheAdapter()

    async def health(self) -> dict:
        breakers = self.breakers.health()
        dependencies = await self.data.health_check()
        dependencies["credential_store"] = await self.credentials.health_check()
        healthy = breakers["healthy"] and all(
            report.get("status") in ("healthy", "not_configured")
            for report in dependencies.values()
        )
        return {
            "status": "healthy" if healthy else "degraded",
            "dependencies": dependencies,
            "breakers": breakers,
            "active_users": await self.credentials.get_active_users_count(),
        }

    async def close(self) -> None:
        await self.events.close()
        await self.data.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
