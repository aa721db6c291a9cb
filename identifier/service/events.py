"""Identity lifecycle events and the sinks that carry them.

Events form a closed, versioned union discriminated on ``type``. Consumers
parse payloads with :data:`event_adapter`; producers hand instances to a
:class:`BestEffortPublisher`, which never lets a sink failure reach the
calling operation.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Protocol, Set, Union

import redis.asyncio as aioredis
from redis import Redis
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from identifier.logging import get_logger
from identifier.storage.models import utcnow

logger = get_logger(__name__)


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Literal[1] = 1
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    email: str
    timestamp: datetime = Field(default_factory=utcnow)


class IdentityRegisteredV1(_EventBase):
    type: Literal["identity.registered"] = "identity.registered"
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class IdentityLoggedInV1(_EventBase):
    type: Literal["identity.logged_in"] = "identity.logged_in"
    device_info: Optional[str] = None
    ip_address: Optional[str] = None


class IdentityLoggedOutV1(_EventBase):
    type: Literal["identity.logged_out"] = "identity.logged_out"
    revoked_tokens: int = 0


class PasswordChangedV1(_EventBase):
    type: Literal["identity.password_changed"] = "identity.password_changed"
    reason: Literal["change", "reset"] = "change"


IdentityEvent = Annotated[
    Union[IdentityRegisteredV1, IdentityLoggedInV1, IdentityLoggedOutV1, PasswordChangedV1],
    Field(discriminator="type"),
]

event_adapter: TypeAdapter[IdentityEvent] = TypeAdapter(IdentityEvent)


class EventPublisher(Protocol):
    async def publish(self, event: IdentityEvent) -> None: ...

    async def close(self) -> None: ...


class LoggingEventPublisher:
    """Writes events to the structured log."""

    async def publish(self, event: IdentityEvent) -> None:
        logger.info(
            "identity_event",
            event_type=event.type,
            event_id=event.event_id,
            user_id=event.user_id,
        )

    async def close(self) -> None:
        return None


class InMemoryEventPublisher:
    def __init__(self) -> None:
        self.events: List[IdentityEvent] = []

    async def publish(self, event: IdentityEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[IdentityEvent]:
        return [e for e in self.events if e.type == event_type]

    async def close(self) -> None:
        return None


class RedisEventPublisher:
    """Appends events to a Redis stream (``XADD``), one entry per event."""

    def __init__(
        self,
        redis_url: str,
        stream: str = "identity-events",
        *,
        socket_timeout: float = 5.0,
        maxlen: int = 100_000,
    ) -> None:
        self.redis_url = redis_url
        self.stream = stream
        self.maxlen = maxlen
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def publish(self, event: IdentityEvent) -> None:
        await self.client.xadd(
            self.stream,
            {
                "type": event.type,
                "user_id": event.user_id,
                "payload": event.model_dump_json(),
            },
            maxlen=self.maxlen,
            approximate=True,
        )

    async def close(self) -> None:
        await self.client.aclose()


class BestEffortPublisher:
    """Fire-and-forget wrapper around a sink.

    ``emit`` schedules delivery on the running loop and returns immediately.
    Delivery errors are logged and dropped; delivery is at-most-once.
    """

    def __init__(self, sink: EventPublisher) -> None:
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    def emit(self, event: IdentityEvent) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            logger.warning("event_dropped_no_loop", event_type=event.type)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: IdentityEvent) -> None:
        try:
            await self.sink.publish(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "event_publish_failed",
                event_type=event.type,
                event_id=event.event_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.sink.close()


__all__ = [
    "BestEffortPublisher",
    "EventPublisher",
    "IdentityEvent",
    "IdentityLoggedInV1",
    "IdentityLoggedOutV1",
    "IdentityRegisteredV1",
    "InMemoryEventPublisher",
    "LoggingEventPublisher",
    "PasswordChangedV1",
    "RedisEventPublisher",
    "event_adapter",
]
