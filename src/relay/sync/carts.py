"""Abandoned cart recovery: storefront cart → CRM Opportunity or Lead.

Routing on cart value:
- value >= opportunity threshold and opportunity creation enabled:
  resolve account/contact and create an Opportunity
- otherwise, when low-value lead creation is enabled: update the open Lead
  for the email in place, or create one
- otherwise: ``skipped``

A follow-up Task is created after either branch when enabled (non-critical).
``expire_old_opportunities`` is the periodic sweep that closes stale
abandoned-cart Opportunities.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from src.relay.audit.service import AuditLog
from src.relay.clients.crm import CRMClient, failed_results
from src.relay.clients.storefront import StorefrontClient
from src.relay.config import SyncConfig
from src.relay.core.monitoring import sync_duration_seconds, sync_operations_total
from src.relay.events.publisher import EventPublisher, publish_safely
from src.relay.events.schemas import EventType, LifecycleEvent
from src.relay.sync.mapping import (
    EXPIRED_DESCRIPTION,
    LEAD_SOURCE,
    OPEN_LEAD_STATUS,
    OPPORTUNITY_EXPIRED_STAGE,
    OPPORTUNITY_OPEN_STAGE,
    cart_value,
    identity_from_cart,
    lead_record,
    opportunity_record,
    recovery_task_record,
)
from src.relay.sync.resolver import EntityResolver
from src.relay.sync.schemas import (
    CustomerIdentity,
    ExpirationResult,
    InboundEvent,
    OperationKind,
    RecordType,
    SyncOutcome,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CartRecoveryOrchestrator:
    """Runs the cart recovery pipeline and the expiration sweep."""

    def __init__(
        self,
        storefront: StorefrontClient,
        crm: CRMClient,
        config: SyncConfig,
        audit: AuditLog,
        publisher: Optional[EventPublisher] = None,
        resolver: Optional[EntityResolver] = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._storefront = storefront
        self._crm = crm
        self._config = config
        self._audit = audit
        self._publisher = publisher
        self._resolver = resolver or EntityResolver(crm, config)
        self._now = now

    # ── Per-event pipeline ─────────────────────────────────────────────

    async def sync(self, event: InboundEvent) -> SyncOutcome:
        cart_id = event.resource_id
        log = logger.bind(cart_id=cart_id, scope=event.scope)
        log.info("cart_sync.started")
        started = time.perf_counter()
        related: dict[str, Any] = {}

        try:
            outcome = await self._run(event, related)
        except Exception as exc:
            log.error(
                "cart_sync.failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            outcome = SyncOutcome(
                operation=OperationKind.CART_SYNC,
                status=SyncStatus.FAILED,
                source_id=str(cart_id),
                related_ids=related,
                message="Failed to sync abandoned cart",
                error=str(exc),
            )

        duration = time.perf_counter() - started
        sync_operations_total.labels(operation="cart_sync", status=outcome.status.value).inc()
        sync_duration_seconds.labels(operation="cart_sync").observe(duration)
        self._audit.record(
            outcome,
            {"scope": event.scope, "payload": event.payload},
            duration_ms=round(duration * 1000, 2),
        )
        return outcome

    async def _run(self, event: InboundEvent, related: dict[str, Any]) -> SyncOutcome:
        retry = self._config.retry
        features = self._config.features
        cart_id = event.resource_id

        cart = await retry.run(lambda: self._storefront.get_cart(cart_id), operation="get_cart")
        customer = await self._fetch_customer(cart)
        identity = identity_from_cart(cart, customer)
        value = cart_value(cart)
        abandoned_at = self._now()
        related["email"] = identity.email

        if value >= self._config.thresholds.opportunity_min_value and features.opportunity_creation:
            record_type = RecordType.OPPORTUNITY
            record_id = await self._create_opportunity(cart, identity, value, abandoned_at, related)
        elif features.lead_creation_low_value:
            record_type = RecordType.LEAD
            record_id = await retry.run(
                lambda: self._upsert_lead(cart, identity, value, abandoned_at),
                operation="upsert_lead",
            )
        else:
            logger.info("cart_sync.skipped", cart_id=cart_id, cart_value=value)
            return SyncOutcome(
                operation=OperationKind.CART_SYNC,
                status=SyncStatus.SKIPPED,
                source_id=str(cart_id),
                related_ids=related,
                monetary_value=value,
                message="Cart below opportunity threshold and lead creation disabled",
            )

        if features.recovery_tasks:
            task_id = await self._create_recovery_task(record_type, record_id, value)
            if task_id:
                related["task_id"] = task_id

        if features.platform_events:
            await publish_safely(
                self._publisher,
                LifecycleEvent(
                    event_type=EventType.CART_ABANDONED,
                    data={
                        "cart_id": str(cart_id),
                        "customer_email": identity.email,
                        "cart_value": value,
                        "lead_id": record_id if record_type == RecordType.LEAD else None,
                        "opportunity_id": (
                            record_id if record_type == RecordType.OPPORTUNITY else None
                        ),
                    },
                ),
            )

        logger.info(
            "cart_sync.completed",
            cart_id=cart_id,
            record_type=record_type.value,
            record_id=record_id,
            cart_value=value,
        )
        return SyncOutcome(
            operation=OperationKind.CART_SYNC,
            status=SyncStatus.SUCCESS,
            record_type=record_type,
            record_id=record_id,
            source_id=str(cart_id),
            related_ids=related,
            monetary_value=value,
            message="Abandoned cart synced successfully",
        )

    async def _fetch_customer(self, cart: dict[str, Any]) -> Optional[dict[str, Any]]:
        customer_id = cart.get("customer_id")
        if not customer_id:
            return None
        try:
            return await self._config.retry.run(
                lambda: self._storefront.get_customer(customer_id), operation="get_customer"
            )
        except Exception as exc:
            logger.warning(
                "cart_sync.customer_unavailable", customer_id=customer_id, error=str(exc)
            )
            return None

    async def _create_opportunity(
        self,
        cart: dict[str, Any],
        identity: CustomerIdentity,
        value: float,
        abandoned_at: datetime,
        related: dict[str, Any],
    ) -> str:
        party = await self._resolver.resolve(identity)
        related.update(account_id=party.account_id, contact_id=party.contact_id)
        record = opportunity_record(
            cart,
            party.account_id,
            value,
            self._config.fields,
            abandoned_at,
            self._config.thresholds.cart_expiration_days,
        )
        opportunity_id = await self._config.retry.run(
            lambda: self._crm.create_record("Opportunity", record),
            operation="create_opportunity",
        )
        logger.info(
            "cart_sync.opportunity_created",
            cart_id=cart.get("id"),
            opportunity_id=opportunity_id,
            amount=value,
        )
        return opportunity_id

    async def _upsert_lead(
        self,
        cart: dict[str, Any],
        identity: CustomerIdentity,
        value: float,
        abandoned_at: datetime,
    ) -> str:
        """Update the most recently modified open Lead for the email, or create one."""
        record = lead_record(cart, identity, value, self._config.fields, abandoned_at)
        open_leads = await self._crm.find_records(
            "Lead",
            {"Email": identity.email, "Status": OPEN_LEAD_STATUS},
            fields=("Id", "LastModifiedDate"),
            order_by="LastModifiedDate DESC",
            limit=2,
        )
        if len(open_leads) > 1:
            logger.warning(
                "cart_sync.multiple_open_leads",
                email=identity.email,
                chosen_lead_id=open_leads[0]["Id"],
            )
        if open_leads:
            lead_id = open_leads[0]["Id"]
            await self._crm.update_record("Lead", lead_id, record)
            logger.info("cart_sync.lead_updated", cart_id=cart.get("id"), lead_id=lead_id)
            return lead_id

        lead_id = await self._crm.create_record("Lead", record)
        logger.info("cart_sync.lead_created", cart_id=cart.get("id"), lead_id=lead_id)
        return lead_id

    async def _create_recovery_task(
        self, record_type: RecordType, record_id: str, value: float
    ) -> Optional[str]:
        """Create the follow-up Task. Non-critical: failures are logged only."""
        record = recovery_task_record(
            record_type,
            record_id,
            value,
            self._config.thresholds.recovery_task_high_priority_value,
            self._now().date(),
        )
        try:
            task_id = await self._crm.create_record("Task", record)
        except Exception as exc:
            logger.warning(
                "cart_sync.recovery_task_failed",
                record_type=record_type.value,
                record_id=record_id,
                error=str(exc),
            )
            return None
        logger.info("cart_sync.recovery_task_created", task_id=task_id, priority=record["Priority"])
        return task_id

    # ── Maintenance ────────────────────────────────────────────────────

    async def expire_old_opportunities(self) -> ExpirationResult:
        """Close abandoned-cart Opportunities older than the expiration window.

        Per-record failures are logged and counted; the sweep continues.
        """
        if not self._config.features.cart_expiration:
            return ExpirationResult(enabled=False)

        abandoned_field = self._config.fields.opportunity.abandoned_date
        if not abandoned_field:
            logger.warning("cart_expiration.no_abandoned_date_field")
            return ExpirationResult(enabled=False)

        cutoff = self._now() - timedelta(days=self._config.thresholds.cart_expiration_days)
        stale = await self._config.retry.run(
            lambda: self._crm.find_records(
                "Opportunity",
                {
                    "StageName": OPPORTUNITY_OPEN_STAGE,
                    "LeadSource": LEAD_SOURCE,
                    abandoned_field: ("<", cutoff),
                },
            ),
            operation="find_expired_opportunities",
        )
        if not stale:
            logger.info("cart_expiration.nothing_to_expire", cutoff=cutoff.isoformat())
            return ExpirationResult(found=0)

        updates = [
            {
                "Id": opp["Id"],
                "StageName": OPPORTUNITY_EXPIRED_STAGE,
                "Description": EXPIRED_DESCRIPTION,
            }
            for opp in stale
        ]
        try:
            results = await self._crm.update_bulk("Opportunity", updates)
        except Exception as exc:
            logger.error("cart_expiration.update_failed", count=len(updates), error=str(exc))
            return ExpirationResult(
                found=len(stale), closed=0, failed_ids=[u["Id"] for u in updates]
            )

        failed_ids = []
        for failure in failed_results(results):
            opportunity_id = updates[failure.index]["Id"]
            failed_ids.append(opportunity_id)
            logger.warning(
                "cart_expiration.record_failed",
                opportunity_id=opportunity_id,
                errors=failure.errors,
            )

        closed = len(results) - len(failed_ids)
        logger.info(
            "cart_expiration.completed",
            found=len(stale),
            closed=closed,
            failed=len(failed_ids),
        )
        return ExpirationResult(found=len(stale), closed=closed, failed_ids=failed_ids)
