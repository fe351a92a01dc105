from __future__ import annotations

import asyncio
import inspect
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import DependencyUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Fallback = Callable[[], Union[Awaitable[T], T]]


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    monitoring_period: float = 60.0
    expected_errors: Tuple[str, ...] = ()
    # Per-attempt bound applied when execute() is not given one explicitly
    timeout: Optional[float] = None


class CircuitBreaker:
    """Failure-isolating wrapper around an async dependency call.

    CLOSED counts failures and opens once ``failure_threshold`` is reached.
    OPEN short-circuits every call until ``reset_timeout`` has elapsed since
    the last failure, then lets the next call through as HALF_OPEN. A
    HALF_OPEN success closes the breaker; any HALF_OPEN failure reopens it.

    Errors whose message contains one of ``expected_errors`` are re-raised
    without being counted. Timeouts are always counted.

    ``request_count`` and ``success_count`` roll over every
    ``monitoring_period``; ``failure_count`` only rolls over while CLOSED so
    an unhealthy dependency keeps its failure memory.
    """

    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.request_count = 0
        self.last_failure_time: Optional[float] = None
        self._window_started = clock()

    def _roll_window(self, now: float) -> None:
        if now - self._window_started < self.config.monitoring_period:
            return
        self.request_count = 0
        self.success_count = 0
        if self.state is BreakerState.CLOSED:
            self.failure_count = 0
        self._window_started = now

    def _admit(self) -> bool:
        """Decide whether the next call may reach the dependency."""
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            if self.state is BreakerState.OPEN:
                elapsed = now - (self.last_failure_time or now)
                if elapsed < self.config.reset_timeout:
                    return False
                self.state = BreakerState.HALF_OPEN
                logger.info("circuit_breaker_half_open", breaker=self.name)
            self.request_count += 1
            return True

    def _is_expected(self, exc: BaseException) -> bool:
        message = str(exc)
        return any(expected in message for expected in self.config.expected_errors)

    def _record_success(self) -> None:
        with self._lock:
            self.success_count += 1
            if self.state is BreakerState.HALF_OPEN:
                self.state = BreakerState.CLOSED
                self.failure_count = 0
                logger.info("circuit_breaker_closed", breaker=self.name)

    def _record_failure(self, exc: BaseException, *, always_count: bool = False) -> None:
        if not always_count and self._is_expected(exc):
            logger.debug(
                "circuit_breaker_expected_error",
                breaker=self.name,
                error_type=type(exc).__name__,
            )
            return
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state is BreakerState.HALF_OPEN or (
                self.failure_count >= self.config.failure_threshold
            ):
                reopened = self.state is not BreakerState.OPEN
                self.state = BreakerState.OPEN
                if reopened:
                    logger.error(
                        "circuit_breaker_opened",
                        breaker=self.name,
                        failure_count=self.failure_count,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )

    async def execute(
        self,
        operation: Operation[T],
        fallback: Optional[Fallback[T]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument coroutine factory for the dependency call
            fallback: Invoked instead of ``operation`` while the breaker is OPEN
            timeout: Seconds before the attempt is abandoned and counted as a failure

        Raises:
            DependencyUnavailableError: breaker OPEN without fallback, or timeout
        """
        if not self._admit():
            if fallback is not None:
                logger.warning("circuit_breaker_fallback", breaker=self.name)
                result = fallback()
                if inspect.isawaitable(result):
                    result = await result
                return result
            raise DependencyUnavailableError(
                f"{self.name} is temporarily unavailable",
                detail={"dependency": self.name},
            )

        bound = timeout if timeout is not None else self.config.timeout
        try:
            if bound is not None:
                result = await asyncio.wait_for(operation(), bound)
            else:
                result = await operation()
        except asyncio.TimeoutError as exc:
            self._record_failure(exc, always_count=True)
            logger.warning("circuit_breaker_timeout", breaker=self.name, timeout=bound)
            raise DependencyUnavailableError(
                f"{self.name} did not respond in time",
                detail={"dependency": self.name},
            ) from exc
        except Exception as exc:
            self._record_failure(exc)
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED with empty counters."""
        with self._lock:
            self.state = BreakerState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.request_count = 0
            self.last_failure_time = None
            self._window_started = self._clock()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._roll_window(self._clock())
            failure_rate = (
                (self.failure_count / self.request_count) * 100
                if self.request_count
                else 0.0
            )
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "request_count": self.request_count,
                "last_failure_time": self.last_failure_time,
                "failure_rate": failure_rate,
            }


class BreakerSet:
    """One breaker per external dependency, built once and shared by reference."""

    # Failure rate (percent) above which a CLOSED breaker is still reported unhealthy
    UNHEALTHY_FAILURE_RATE = 50.0

    def __init__(
        self,
        database: CircuitBreaker,
        cache: CircuitBreaker,
        broker: CircuitBreaker,
    ) -> None:
        self.database = database
        self.cache = cache
        self.broker = broker

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic
    ) -> "BreakerSet":
        return cls(
            database=CircuitBreaker(
                "database",
                BreakerConfig(
                    failure_threshold=settings.db_breaker_failure_threshold,
                    reset_timeout=settings.db_breaker_reset_timeout_seconds,
                    monitoring_period=settings.db_breaker_monitoring_period_seconds,
                    expected_errors=tuple(settings.db_breaker_expected_errors),
                    timeout=settings.db_timeout_seconds,
                ),
                clock=clock,
            ),
            cache=CircuitBreaker(
                "cache",
                BreakerConfig(
                    failure_threshold=settings.cache_breaker_failure_threshold,
                    reset_timeout=settings.cache_breaker_reset_timeout_seconds,
                    monitoring_period=settings.cache_breaker_monitoring_period_seconds,
                    expected_errors=tuple(settings.cache_breaker_expected_errors),
                    timeout=settings.cache_timeout_seconds,
                ),
                clock=clock,
            ),
            broker=CircuitBreaker(
                "broker",
                BreakerConfig(
                    failure_threshold=settings.broker_breaker_failure_threshold,
                    reset_timeout=settings.broker_breaker_reset_timeout_seconds,
                    monitoring_period=settings.broker_breaker_monitoring_period_seconds,
                    expected_errors=tuple(settings.broker_breaker_expected_errors),
                    timeout=settings.broker_timeout_seconds,
                ),
                clock=clock,
            ),
        )

    def all(self) -> Dict[str, CircuitBreaker]:
        return {
            "database": self.database,
            "cache": self.cache,
            "broker": self.broker,
        }

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.stats() for name, breaker in self.all().items()}

    def health(self) -> Dict[str, Any]:
        stats = self.stats()
        issues: list[str] = []
        for name, stat in stats.items():
            if stat["state"] == BreakerState.OPEN.value:
                issues.append(f"{name} circuit breaker is OPEN")
            elif stat["failure_rate"] > self.UNHEALTHY_FAILURE_RATE:
                issues.append(
                    f"{name} has high failure rate: {stat['failure_rate']:.2f}%"
                )
        return {"healthy": not issues, "issues": issues, "stats": stats}

    def reset(self) -> None:
        for breaker in self.all().values():
            breaker.reset()


__all__ = ["BreakerConfig", "BreakerSet", "BreakerState", "CircuitBreaker"]
