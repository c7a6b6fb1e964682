"""Customer analytics write-back after an order sync.

Reads the account's running totals, adds the new order, and writes lifetime
value, order count, average order value, last order date, tier, RFM token and
tags to the configured account fields. Best-effort: every failure is logged
and swallowed so the order sync result is unaffected.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timezone
from typing import Any, Optional

import structlog

from src.relay.analytics.scorer import LOWEST_RFM, NEUTRAL_RFM, CustomerScorer, ScoreInputs
from src.relay.clients.crm import CRMClient
from src.relay.config import SyncConfig
from src.relay.sync.mapping import parse_storefront_date, to_amount

logger = structlog.get_logger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class CustomerAnalyticsService:
    """Updates CRM account analytics fields.

    Args:
        crm: CRM client.
        config: Pipeline configuration (feature flags, thresholds, field names).
        today: Clock override for tests.
    """

    def __init__(
        self,
        crm: CRMClient,
        config: SyncConfig,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._crm = crm
        self._config = config
        self._scorer = CustomerScorer(config.thresholds)
        self._today = today

    @property
    def scorer(self) -> CustomerScorer:
        return self._scorer

    async def _get_account(self, account_id: str) -> Optional[dict[str, Any]]:
        fields = self._config.fields.account
        selected = ["Id", "Name"] + [
            f for f in (fields.clv, fields.total_orders, fields.last_order_date) if f
        ]
        records = await self._config.retry.run(
            lambda: self._crm.find_records("Account", {"Id": account_id}, fields=selected, limit=1),
            operation="get_account",
        )
        return records[0] if records else None

    async def rfm_score(self, account_id: str, prior_order_count: Optional[int]) -> str:
        """RFM token from the account's CRM order history.

        A known prior order count of zero short-circuits to ``LOWEST_RFM``
        without reading history. Any failure reading history yields
        ``NEUTRAL_RFM``.
        """
        if prior_order_count == 0:
            return LOWEST_RFM
        try:
            orders = await self._crm.find_records(
                "Order",
                {"AccountId": account_id},
                fields=("Id", "TotalAmount", "EffectiveDate"),
                order_by="EffectiveDate DESC",
            )
            if not orders:
                return LOWEST_RFM
            last_order = parse_storefront_date(orders[0].get("EffectiveDate"))
            inputs = ScoreInputs(
                order_count=len(orders),
                total_spend=sum(to_amount(o.get("TotalAmount")) for o in orders),
                days_since_last_order=max((self._today() - last_order).days, 0),
            )
            return self._scorer.rfm(inputs)
        except Exception as exc:
            logger.warning("analytics.rfm_failed", account_id=account_id, error=str(exc))
            return NEUTRAL_RFM

    async def update_customer_analytics(
        self, account_id: str, order_value: float
    ) -> Optional[dict[str, Any]]:
        """Apply the new order to the account's analytics fields.

        Returns:
            The field updates written, or None when nothing was written.
        """
        features = self._config.features
        if not features.analytics_enabled:
            return None

        try:
            account = await self._get_account(account_id)
            if account is None:
                logger.warning("analytics.account_not_found", account_id=account_id)
                return None
            return await self._apply(account_id, account, order_value)
        except Exception as exc:
            logger.warning(
                "analytics.update_failed",
                account_id=account_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    async def _apply(
        self, account_id: str, account: dict[str, Any], order_value: float
    ) -> Optional[dict[str, Any]]:
        features = self._config.features
        fields = self._config.fields.account
        today = self._today()

        prior_clv = to_amount(account.get(fields.clv)) if fields.clv else 0.0
        prior_orders: Optional[int] = None
        if fields.total_orders:
            prior_orders = int(account.get(fields.total_orders) or 0)
        prior_last_order: Optional[date] = None
        if fields.last_order_date and account.get(fields.last_order_date):
            prior_last_order = parse_storefront_date(account[fields.last_order_date])

        lifetime_value = prior_clv + order_value
        order_count = (prior_orders or 0) + 1

        updates: dict[str, Any] = {}
        if features.customer_lifetime_value and fields.clv:
            updates[fields.clv] = round(lifetime_value, 2)
        if features.customer_segmentation:
            if fields.total_orders:
                updates[fields.total_orders] = order_count
            if fields.average_order_value:
                updates[fields.average_order_value] = round(lifetime_value / order_count, 2)
            if fields.customer_tier:
                updates[fields.customer_tier] = self._scorer.tier(lifetime_value)
        if fields.last_order_date:
            updates[fields.last_order_date] = today.isoformat()
        if features.rfm_analysis and fields.rfm_score:
            updates[fields.rfm_score] = await self.rfm_score(account_id, prior_orders)

        if features.customer_tags:
            days_since = (today - prior_last_order).days if prior_last_order else None
            tags = self._scorer.tags(
                lifetime_value, order_count, days_since, self._config.thresholds.churn_risk_days
            )
            logger.info("analytics.tags_computed", account_id=account_id, tags=tags)
            if fields.tags:
                updates[fields.tags] = ";".join(tags)

        if not updates:
            return None

        await self._config.retry.run(
            lambda: self._crm.update_record("Account", account_id, updates),
            operation="update_account_analytics",
        )
        logger.info("analytics.updated", account_id=account_id, fields=sorted(updates))
        return updates
