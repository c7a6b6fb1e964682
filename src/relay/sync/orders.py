"""Order sync pipeline: storefront order → CRM Order.

Steps, in order:
1. Fetch the order (retried)
2. Status gate: ineligible statuses end as ``skipped`` with no CRM writes
3. Identity from the billing address
4. Resolve account and contact (retried, critical)
5. Fetch line items when enabled (retried, critical)
6. Create the Order record (retried, critical)
7. Create OrderItem children in bulk (non-critical)
8. Customer analytics write-back when enabled (best-effort)
9. Lifecycle event (fire-and-forget)
10. Exactly one audit entry

``sync`` never raises; failures become a ``failed`` SyncOutcome.
"""

from __future__ import annotations

import time
from typing import Any, Optional

import structlog

from src.relay.analytics.service import CustomerAnalyticsService
from src.relay.audit.service import AuditLog
from src.relay.clients.crm import CRMClient, failed_results
from src.relay.clients.storefront import StorefrontClient
from src.relay.config import SyncConfig
from src.relay.core.monitoring import sync_duration_seconds, sync_operations_total
from src.relay.events.publisher import EventPublisher, publish_safely
from src.relay.events.schemas import LifecycleEvent, order_event_type
from src.relay.sync.mapping import (
    identity_from_order,
    is_eligible_order,
    order_item_records,
    order_record,
    to_amount,
)
from src.relay.sync.resolver import EntityResolver
from src.relay.sync.schemas import (
    InboundEvent,
    OperationKind,
    RecordType,
    SyncOutcome,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


class OrderSyncOrchestrator:
    """Runs the order pipeline for one inbound order webhook at a time.

    Instances hold no per-event state and are safe to share across
    concurrent webhook tasks.
    """

    def __init__(
        self,
        storefront: StorefrontClient,
        crm: CRMClient,
        config: SyncConfig,
        audit: AuditLog,
        publisher: Optional[EventPublisher] = None,
        analytics: Optional[CustomerAnalyticsService] = None,
        resolver: Optional[EntityResolver] = None,
    ) -> None:
        self._storefront = storefront
        self._crm = crm
        self._config = config
        self._audit = audit
        self._publisher = publisher
        self._analytics = analytics or CustomerAnalyticsService(crm, config)
        self._resolver = resolver or EntityResolver(crm, config)

    async def sync(self, event: InboundEvent) -> SyncOutcome:
        order_id = event.resource_id
        log = logger.bind(order_id=order_id, scope=event.scope)
        log.info("order_sync.started")
        started = time.perf_counter()
        related: dict[str, Any] = {}

        try:
            outcome = await self._run(event, related)
        except Exception as exc:
            log.error(
                "order_sync.failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            outcome = SyncOutcome(
                operation=OperationKind.ORDER_SYNC,
                status=SyncStatus.FAILED,
                source_id=str(order_id),
                related_ids=related,
                message="Failed to sync order",
                error=str(exc),
            )

        duration = time.perf_counter() - started
        sync_operations_total.labels(operation="order_sync", status=outcome.status.value).inc()
        sync_duration_seconds.labels(operation="order_sync").observe(duration)
        self._audit.record(
            outcome,
            {"scope": event.scope, "payload": event.payload},
            duration_ms=round(duration * 1000, 2),
        )
        return outcome

    async def _run(self, event: InboundEvent, related: dict[str, Any]) -> SyncOutcome:
        retry = self._config.retry
        features = self._config.features
        order_id = event.resource_id

        order = await retry.run(lambda: self._storefront.get_order(order_id), operation="get_order")
        status = order.get("status")

        if not is_eligible_order(status):
            logger.info("order_sync.skipped", order_id=order_id, status=status)
            return SyncOutcome(
                operation=OperationKind.ORDER_SYNC,
                status=SyncStatus.SKIPPED,
                source_id=str(order_id),
                related_ids={"status": status},
                message="Order status not eligible for sync",
            )

        identity = identity_from_order(order)
        party = await self._resolver.resolve(identity)
        related.update(account_id=party.account_id, contact_id=party.contact_id)

        products: list[dict[str, Any]] = []
        if features.order_line_items:
            products = await retry.run(
                lambda: self._storefront.get_order_products(order_id),
                operation="get_order_products",
            )

        order = await self._with_shipping_addresses(order)
        record = order_record(
            order, party.account_id, self._config.fields, include_payment=features.payment_details
        )
        crm_order_id = await retry.run(
            lambda: self._crm.create_record("Order", record), operation="create_order"
        )
        related["order_id"] = crm_order_id
        logger.info("order_sync.order_created", order_id=order_id, crm_order_id=crm_order_id)

        if products:
            related["line_item_ids"] = await self._create_line_items(crm_order_id, products)

        order_value = to_amount(order.get("total_inc_tax"))
        if features.analytics_enabled:
            await self._analytics.update_customer_analytics(party.account_id, order_value)

        if features.platform_events:
            await publish_safely(
                self._publisher,
                LifecycleEvent(
                    event_type=order_event_type(event.scope, status),
                    data={
                        "order_id": crm_order_id,
                        "storefront_order_id": str(order_id),
                        "account_id": party.account_id,
                        "total_amount": order_value,
                        "status": status,
                    },
                ),
            )

        return SyncOutcome(
            operation=OperationKind.ORDER_SYNC,
            status=SyncStatus.SUCCESS,
            record_type=RecordType.ORDER,
            record_id=crm_order_id,
            source_id=str(order_id),
            related_ids=related,
            monetary_value=order_value,
            message="Order synced successfully",
        )

    async def _with_shipping_addresses(self, order: dict[str, Any]) -> dict[str, Any]:
        """Inline shipping addresses when the order only links to them."""
        if isinstance(order.get("shipping_addresses"), list):
            return order
        try:
            addresses = await self._storefront.get_order_shipping_addresses(order["id"])
        except Exception as exc:
            logger.warning(
                "order_sync.shipping_addresses_unavailable", order_id=order["id"], error=str(exc)
            )
            addresses = []
        return {**order, "shipping_addresses": addresses}

    async def _create_line_items(
        self, crm_order_id: str, products: list[dict[str, Any]]
    ) -> list[str]:
        """Create OrderItem records. Non-critical: failures are logged only."""
        try:
            results = await self._crm.create_bulk(
                "OrderItem", order_item_records(crm_order_id, products)
            )
        except Exception as exc:
            logger.warning(
                "order_sync.line_items_failed",
                crm_order_id=crm_order_id,
                product_count=len(products),
                error=str(exc),
            )
            return []

        for failure in failed_results(results):
            logger.warning(
                "order_sync.line_item_failed",
                crm_order_id=crm_order_id,
                index=failure.index,
                product=products[failure.index].get("name"),
                errors=failure.errors,
            )
        created = [r.id for r in results if r.success and r.id]
        logger.info(
            "order_sync.line_items_created",
            crm_order_id=crm_order_id,
            created=len(created),
            total=len(products),
        )
        return created
