"""Lifecycle event schema and publishers."""

from src.relay.events.publisher import (
    CRMPlatformEventPublisher,
    EventPublisher,
    LoggingEventPublisher,
    RedisStreamEventPublisher,
    build_publisher,
    publish_safely,
)
from src.relay.events.schemas import EventType, LifecycleEvent, order_event_type

__all__ = [
    "CRMPlatformEventPublisher",
    "EventPublisher",
    "EventType",
    "LifecycleEvent",
    "LoggingEventPublisher",
    "RedisStreamEventPublisher",
    "build_publisher",
    "order_event_type",
    "publish_safely",
]
