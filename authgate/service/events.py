from __future__ import annotations

import asyncio
import json
import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol, Set

import redis.asyncio as aioredis

from authgate.config import Settings
from authgate.logging import get_correlation_id, get_logger
from authgate.resilience.circuit_breaker import CircuitBreaker
from authgate.storage.models import utcnow

logger = get_logger(__name__)

USER_CREATED = "user.created"
USER_LOGIN = "user.login"
USER_LOGOUT = "user.logout"
USER_VERIFIED = "user.verified"
USER_PASSWORD_RESET = "user.password_reset"
USER_DEACTIVATED = "user.deactivated"


class EventBroker(Protocol):
    async def publish(self, channel: str, message: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class RedisEventBroker:
    """Publishes JSON envelopes on a Redis pub/sub channel."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0) -> None:
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        receivers = await self.client.publish(channel, json.dumps(message, default=str))
        logger.debug("event_published", channel=channel, event_name=message.get("event"), receivers=receivers)

    async def close(self) -> None:
        await self.client.aclose()


class MemoryEventBroker:
    """Keeps published envelopes in order; used by tests and memory mode."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.messages: List[Dict[str, Any]] = []

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        with self._lock:
            self.messages.append({"channel": channel, **message})

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [m for m in self.messages if name is None or m["event"] == name]

    async def close(self) -> None:
        return None


class EventPublisher:
    """Fire-and-forget domain events behind the broker breaker.

    ``emit`` never raises and never blocks the caller on the broker; each
    delivery runs as its own task. Undeliverable events are logged and
    dropped. ``drain`` waits for whatever is still in flight.
    """

    def __init__(self, broker: EventBroker, breaker: CircuitBreaker, settings: Settings) -> None:
        self.broker = broker
        self.breaker = breaker
        self.settings = settings
        self._pending: Set[asyncio.Task] = set()

    def envelope(self, event: str, data: Dict[str, Any]) -> Dict[str, Any]:
        message = {
            "event": event,
            "data": data,
            "timestamp": utcnow().isoformat(),
            "service": self.settings.service_name,
            "message_id": str(uuid.uuid4()),
        }
        cid = get_correlation_id()
        if cid:
            message["correlation_id"] = cid
        return message

    async def _deliver(self, message: Dict[str, Any]) -> None:
        try:
            await self.breaker.execute(
                lambda: self.broker.publish(self.settings.event_channel, message)
            )
        except Exception as exc:
            logger.warning(
                "event_publish_failed",
                event_name=message["event"],
                message_id=message["message_id"],
                error_type=type(exc).__name__,
            )

    def emit(self, event: str, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        message = self.envelope(event, data)
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(message))
        except RuntimeError:
            logger.warning("event_dropped_no_loop", event_name=event)
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.broker.close()


__all__ = [
    "EventBroker",
    "EventPublisher",
    "MemoryEventBroker",
    "RedisEventBroker",
    "USER_CREATED",
    "USER_DEACTIVATED",
    "USER_LOGIN",
    "USER_LOGOUT",
    "USER_PASSWORD_RESET",
    "USER_VERIFIED",
]
