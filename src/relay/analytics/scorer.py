"""Deterministic customer tier and RFM scoring.

Computes a four-level customer tier from lifetime value and a three-digit RFM
token (recency, frequency, monetary; each 1-5) from order history. Pure
arithmetic, no I/O: the analytics service gathers the inputs.

Exports:
    CustomerScorer: Tier and RFM computation against configured thresholds.
    ScoreInputs: Per-call order history summary.
    LOWEST_RFM: Token for customers with no prior orders.
    NEUTRAL_RFM: Token used when order history cannot be read.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from src.relay.config import Thresholds

LOWEST_RFM = "111"
NEUTRAL_RFM = "333"


class ScoreInputs(BaseModel):
    """Order history summary for one scoring call.

    Attributes:
        order_count: Lifetime number of orders.
        total_spend: Sum of all order totals.
        days_since_last_order: Days between the latest order and today.
    """

    order_count: int = Field(ge=0)
    total_spend: float = Field(ge=0.0)
    days_since_last_order: int = Field(ge=0)


class CustomerScorer:
    """Tier ladder and RFM buckets.

    Tier (lifetime value):
        >= platinum -> Platinum
        >= gold     -> Gold
        >= silver   -> Silver
        otherwise   -> Bronze

    RFM sub-scores:
        recency:   <=30d -> 5, <=60d -> 4, <=90d -> 3, <=180d -> 2, else 1
        frequency: >=10 -> 5, >=5 -> 4, >=3 -> 3, >=2 -> 2, else 1
        monetary:  platinum/gold/silver/bronze thresholds -> 5/4/3/2, else 1
    """

    def __init__(self, thresholds: Thresholds) -> None:
        self._thresholds = thresholds

    def tier(self, lifetime_value: float) -> str:
        t = self._thresholds
        if lifetime_value >= t.tier_platinum:
            return "Platinum"
        if lifetime_value >= t.tier_gold:
            return "Gold"
        if lifetime_value >= t.tier_silver:
            return "Silver"
        return "Bronze"

    @staticmethod
    def recency_score(days_since_last_order: int) -> int:
        if days_since_last_order <= 30:
            return 5
        if days_since_last_order <= 60:
            return 4
        if days_since_last_order <= 90:
            return 3
        if days_since_last_order <= 180:
            return 2
        return 1

    @staticmethod
    def frequency_score(order_count: int) -> int:
        if order_count >= 10:
            return 5
        if order_count >= 5:
            return 4
        if order_count >= 3:
            return 3
        if order_count >= 2:
            return 2
        return 1

    def monetary_score(self, total_spend: float) -> int:
        t = self._thresholds
        if total_spend >= t.tier_platinum:
            return 5
        if total_spend >= t.tier_gold:
            return 4
        if total_spend >= t.tier_silver:
            return 3
        if total_spend >= t.tier_bronze:
            return 2
        return 1

    def rfm(self, inputs: ScoreInputs) -> str:
        """Concatenated RFM token, e.g. ``"534"``. No orders → ``LOWEST_RFM``."""
        if inputs.order_count == 0:
            return LOWEST_RFM
        return (
            f"{self.recency_score(inputs.days_since_last_order)}"
            f"{self.frequency_score(inputs.order_count)}"
            f"{self.monetary_score(inputs.total_spend)}"
        )

    def tags(
        self,
        lifetime_value: float,
        order_count: int,
        days_since_last_order: int | None,
        churn_risk_days: int,
    ) -> list[str]:
        """Customer tags: VIP, First-Time Buyer, At-Risk."""
        tags: list[str] = []
        if lifetime_value >= self._thresholds.tier_platinum:
            tags.append("VIP")
        if order_count == 1:
            tags.append("First-Time Buyer")
        if (
            order_count > 1
            and days_since_last_order is not None
            and days_since_last_order > churn_risk_days
        ):
            tags.append("At-Risk")
        return tags
