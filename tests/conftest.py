import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from authgate.storage.cache import MemoryCacheAdapter  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._mono = 1000.0

    def __call__(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds


class YieldingCache(MemoryCacheAdapter):
    """Memory cache that hands control back to the event loop before every call,
    so gathered coroutines interleave the way they would against Redis."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value, ttl=None):
        await asyncio.sleep(0)
        return await super().set(key, value, ttl)

    async def getdel(self, key):
        await asyncio.sleep(0)
        return await super().getdel(key)

    async def delete(self, *keys):
        await asyncio.sleep(0)
        return await super().delete(*keys)

    async def incr_with_ttl(self, key, ttl):
        await asyncio.sleep(0)
        return await super().incr_with_ttl(key, ttl)

    async def record_attempt(self, key, max_attempts):
        await asyncio.sleep(0)
        return await super().record_attempt(key, max_attempts)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, test_mode=True)


@pytest.fixture
def yielding_cache(clock):
    return YieldingCache(clock=clock.monotonic)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
