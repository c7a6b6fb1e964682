"""Lifecycle event schema emitted after each successful sync.

Events serialize two ways: to a flat string dict for Redis Streams, and to a
CRM platform-event record (``*__e`` sobject) for the CRM publisher.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Kinds of lifecycle notifications."""

    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_SHIPPED = "order.shipped"
    CART_ABANDONED = "cart.abandoned"


class PlatformEventSchema(BaseModel):
    """Shape of one CRM platform event.

    Attributes:
        sobject: The ``__e`` sobject name.
        type_label: Value written to ``EventType__c``.
        date_field: Field carrying the event timestamp.
        fields: ``LifecycleEvent.data`` key to event field, in record order.
    """

    model_config = ConfigDict(frozen=True)

    sobject: str
    type_label: str
    date_field: str
    fields: dict[str, str]


PLATFORM_EVENTS: dict[EventType, PlatformEventSchema] = {
    EventType.ORDER_CREATED: PlatformEventSchema(
        sobject="BigCommerce_Order_Created__e",
        type_label="Order_Created",
        date_field="OrderDate__c",
        fields={
            "order_id": "OrderId__c",
            "storefront_order_id": "BigCommerceOrderId__c",
            "account_id": "AccountId__c",
            "total_amount": "TotalAmount__c",
        },
    ),
    EventType.ORDER_UPDATED: PlatformEventSchema(
        sobject="BigCommerce_Order_Updated__e",
        type_label="Order_Updated",
        date_field="UpdatedDate__c",
        fields={
            "order_id": "OrderId__c",
            "storefront_order_id": "BigCommerceOrderId__c",
            "status": "Status__c",
        },
    ),
    EventType.ORDER_SHIPPED: PlatformEventSchema(
        sobject="BigCommerce_Order_Shipped__e",
        type_label="Order_Shipped",
        date_field="ShippedDate__c",
        fields={
            "order_id": "OrderId__c",
            "storefront_order_id": "BigCommerceOrderId__c",
            "tracking_number": "TrackingNumber__c",
            "carrier": "Carrier__c",
        },
    ),
    EventType.CART_ABANDONED: PlatformEventSchema(
        sobject="BigCommerce_Cart_Abandoned__e",
        type_label="Cart_Abandoned",
        date_field="AbandonedDate__c",
        fields={
            "cart_id": "CartId__c",
            "customer_email": "CustomerEmail__c",
            "cart_value": "CartValue__c",
            "lead_id": "LeadId__c",
            "opportunity_id": "OpportunityId__c",
        },
    ),
}


def order_event_type(scope: str, storefront_status: str | None) -> EventType:
    """Pick the order event for a webhook scope and storefront status."""
    if scope == "store/order/created":
        return EventType.ORDER_CREATED
    if storefront_status == "Shipped":
        return EventType.ORDER_SHIPPED
    return EventType.ORDER_UPDATED


class LifecycleEvent(BaseModel):
    """A notification for downstream consumers.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        event_type: What happened.
        timestamp: UTC creation time.
        data: Identifiers and amounts describing the synced records.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)

    def to_stream_dict(self) -> dict[str, str]:
        """Flat string dict suitable for XADD."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": json.dumps(self.data, default=str),
        }

    def to_platform_event(self) -> tuple[str, dict[str, Any]]:
        """Return ``(sobject, record)`` for the CRM platform event.

        Only fields defined on the event type are written; data keys the
        event does not declare, and None values, are dropped.
        """
        schema = PLATFORM_EVENTS[self.event_type]
        record: dict[str, Any] = {"EventType__c": schema.type_label}
        for key, field in schema.fields.items():
            value = self.data.get(key)
            if value is not None:
                record[field] = value
        record[schema.date_field] = self.timestamp.isoformat()
        return schema.sobject, record
