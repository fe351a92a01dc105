"""Tests for fire-and-forget event emission."""

import asyncio

import pytest

from authgate.logging import set_correlation_id
from authgate.resilience.circuit_breaker import BreakerConfig, BreakerState, CircuitBreaker
from authgate.service.events import EventPublisher, MemoryEventBroker


class RefusingBroker(MemoryEventBroker):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def publish(self, channel, message):
        self.attempts += 1
        raise ConnectionRefusedError("channel closed")


class StuckBroker(MemoryEventBroker):
    async def publish(self, channel, message):
        await asyncio.sleep(10)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("broker", BreakerConfig(failure_threshold=2, timeout=0.05), clock=clock.monotonic)


class TestEnvelope:
    async def test_envelope_shape(self, settings, breaker):
        broker = MemoryEventBroker()
        publisher = EventPublisher(broker, breaker, settings)
        set_correlation_id("req-123")
        publisher.emit("user.login", {"user_id": "u1"})
        await publisher.drain()
        [message] = broker.messages
        assert message["channel"] == "auth.events"
        assert message["event"] == "user.login"
        assert message["data"] == {"user_id": "u1"}
        assert message["service"] == "auth-service"
        assert message["message_id"]
        assert message["timestamp"]
        assert message["correlation_id"] == "req-123"


class TestDelivery:
    async def test_broker_failure_never_reaches_caller(self, settings, breaker):
        broker = RefusingBroker()
        publisher = EventPublisher(broker, breaker, settings)
        for _ in range(4):
            publisher.emit("user.logout", {"user_id": "u1"})
            await publisher.drain()
        assert broker.attempts == 2
        assert breaker.state is BreakerState.OPEN

    async def test_expected_broker_errors_do_not_trip(self, settings, clock):
        breaker = CircuitBreaker(
            "broker",
            BreakerConfig(failure_threshold=1, expected_errors=("channel closed",)),
            clock=clock.monotonic,
        )
        publisher = EventPublisher(RefusingBroker(), breaker, settings)
        publisher.emit("user.created", {"user_id": "u1"})
        await publisher.drain()
        assert breaker.state is BreakerState.CLOSED

    async def test_slow_broker_is_bounded(self, settings, breaker):
        publisher = EventPublisher(StuckBroker(), breaker, settings)
        publisher.emit("user.login", {"user_id": "u1"})
        await asyncio.wait_for(publisher.drain(), 1)
        assert breaker.failure_count == 1

    def test_emit_without_loop_is_dropped(self, settings, breaker):
        publisher = EventPublisher(MemoryEventBroker(), breaker, settings)
        assert publisher.emit("user.login", {"user_id": "u1"}) is None
