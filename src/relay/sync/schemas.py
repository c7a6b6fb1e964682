"""Pydantic data models for the sync pipeline.

Defines the inbound webhook event, the normalized customer identity used as
the resolution key, the resolved CRM party, and the per-run SyncOutcome that
feeds both the audit log and the event publisher. Every model that crosses a
component boundary is frozen.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class IdentityError(ValueError):
    """A customer identity could not be derived (no usable email)."""


# -- Enums --------------------------------------------------------------------


class RecordType(str, Enum):
    """CRM record type produced by a sync run."""

    ORDER = "Order"
    OPPORTUNITY = "Opportunity"
    LEAD = "Lead"


class SyncStatus(str, Enum):
    """Terminal state of a sync run."""

    SKIPPED = "skipped"
    SUCCESS = "success"
    FAILED = "failed"


class OperationKind(str, Enum):
    """Audit operation kinds."""

    ORDER_SYNC = "ORDER_SYNC"
    CART_SYNC = "CART_SYNC"


# -- Inbound ------------------------------------------------------------------


class InboundEvent(BaseModel):
    """A webhook delivery, immutable once received.

    Attributes:
        scope: Storefront event tag, e.g. ``store/order/created``.
        payload: The webhook ``data`` object; carries at least ``id``.
        received_at: UTC time the webhook was accepted.
    """

    model_config = ConfigDict(frozen=True)

    scope: str
    payload: dict[str, Any]
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def resource_id(self) -> Any:
        return self.payload.get("id")


# -- Identity -----------------------------------------------------------------


class CustomerIdentity(BaseModel):
    """Normalized customer identity. ``email`` is the resolution key."""

    model_config = ConfigDict(frozen=True)

    first_name: str = "Unknown"
    last_name: str = "Customer"
    email: str
    phone: str = ""
    company: str = ""
    address_1: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not value or "@" not in value:
            raise ValueError("email must be a non-empty address")
        return value

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ResolvedParty(BaseModel):
    """CRM-side identifiers for a resolved customer."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    contact_id: str


# -- Outcomes -----------------------------------------------------------------


class SyncOutcome(BaseModel):
    """Result of exactly one pipeline run.

    Attributes:
        operation: Which pipeline produced this outcome.
        status: skipped, success or failed.
        record_type: CRM record type created or updated, if any.
        record_id: CRM ID of the primary record, if any.
        source_id: Storefront ID of the order or cart.
        related_ids: Other CRM IDs touched (account, contact, line items).
        monetary_value: Order total or cart value.
        message: Human-readable summary for the HTTP response.
        error: Error text when the run failed.
    """

    model_config = ConfigDict(frozen=True)

    operation: OperationKind
    status: SyncStatus
    record_type: Optional[RecordType] = None
    record_id: Optional[str] = None
    source_id: Optional[str] = None
    related_ids: dict[str, Any] = Field(default_factory=dict)
    monetary_value: Optional[float] = None
    message: str = ""
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status != SyncStatus.FAILED

    def correlation_ids(self) -> dict[str, Any]:
        """Source and CRM identifiers for audit correlation."""
        ids: dict[str, Any] = {"source_id": self.source_id, "record_id": self.record_id}
        ids.update({k: v for k, v in self.related_ids.items() if isinstance(v, str)})
        return ids


class ExpirationResult(BaseModel):
    """Summary of one abandoned-cart opportunity expiration sweep."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    found: int = 0
    closed: int = 0
    failed_ids: list[str] = Field(default_factory=list)
