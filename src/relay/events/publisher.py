"""Pluggable lifecycle event publishers.

Implementations:
- LoggingEventPublisher: logs the event (default)
- CRMPlatformEventPublisher: creates a CRM platform-event record
- RedisStreamEventPublisher: appends to a Redis Stream

``publish_safely`` is the only entry point the pipeline uses: it never raises,
so event publication cannot fail a sync.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import redis.asyncio as aioredis
import structlog

from src.relay.clients.crm import CRMClient
from src.relay.config import PublisherMode
from src.relay.core.monitoring import events_published_total
from src.relay.events.schemas import LifecycleEvent

logger = structlog.get_logger(__name__)

DEFAULT_STREAM = "relay:events"


class EventPublisher(ABC):
    """Sends lifecycle events to downstream consumers."""

    @abstractmethod
    async def publish(self, event: LifecycleEvent) -> None:
        ...

    async def close(self) -> None:
        """Release any held connections."""


class LoggingEventPublisher(EventPublisher):
    async def publish(self, event: LifecycleEvent) -> None:
        logger.info(
            "event.published",
            mode="log",
            event_id=event.event_id,
            event_type=event.event_type.value,
            data=event.data,
        )


class CRMPlatformEventPublisher(EventPublisher):
    """Publishes by creating a platform-event (``__e``) record in the CRM."""

    def __init__(self, crm: CRMClient) -> None:
        self._crm = crm

    async def publish(self, event: LifecycleEvent) -> None:
        sobject, record = event.to_platform_event()
        record_id = await self._crm.create_record(sobject, record)
        logger.info(
            "event.published",
            mode="crm",
            sobject=sobject,
            event_id=event.event_id,
            record_id=record_id,
        )


class RedisStreamEventPublisher(EventPublisher):
    """Appends events to a Redis Stream with approximate trimming.

    Args:
        redis: Async Redis client.
        stream: Stream key.
        maxlen: Approximate stream length cap.
    """

    def __init__(self, redis: aioredis.Redis, stream: str = DEFAULT_STREAM, maxlen: int = 1000) -> None:
        self._redis = redis
        self._stream = stream
        self._maxlen = maxlen

    async def publish(self, event: LifecycleEvent) -> None:
        message_id = await self._redis.xadd(
            self._stream,
            event.to_stream_dict(),
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug(
            "event.published",
            mode="redis",
            stream=self._stream,
            event_id=event.event_id,
            message_id=message_id,
        )

    async def close(self) -> None:
        await self._redis.aclose()


async def publish_safely(publisher: EventPublisher | None, event: LifecycleEvent) -> bool:
    """Publish ``event``; log and swallow any failure.

    Returns:
        True if the publisher accepted the event. False when publishing is
        disabled (no publisher) or the publisher raised.
    """
    if publisher is None:
        return False
    try:
        await publisher.publish(event)
    except Exception as exc:
        events_published_total.labels(event_type=event.event_type.value, result="error").inc()
        logger.warning(
            "event.publish_failed",
            event_id=event.event_id,
            event_type=event.event_type.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return False
    events_published_total.labels(event_type=event.event_type.value, result="ok").inc()
    return True


def build_publisher(
    mode: PublisherMode,
    crm: CRMClient | None = None,
    redis_url: str | None = None,
) -> EventPublisher:
    """Construct the publisher selected by configuration."""
    if mode == PublisherMode.crm:
        if crm is None:
            raise ValueError("CRM publisher requires a CRM client")
        return CRMPlatformEventPublisher(crm)
    if mode == PublisherMode.redis:
        if not redis_url:
            raise ValueError("Redis publisher requires REDIS_URL")
        return RedisStreamEventPublisher(aioredis.from_url(redis_url, decode_responses=True))
    return LoggingEventPublisher()
