"""Tests for the abandoned cart recovery pipeline and expiration sweep.

Covers:
    - Value >= threshold with opportunity creation: Opportunity with close date
    - Value below threshold: Lead created, second cart updates it in place
    - Several open Leads: the most recently modified one wins
    - Empty cart (value 0): Lead
    - Lead creation disabled: skipped, no writes
    - Recovery Task priority and non-critical failure
    - Registered customer lookup, failure falls back to the cart
    - Expiration sweep: only stale Prospecting abandoned-cart Opportunities,
      per-record failures counted, disabled flag honored
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.relay.clients.crm import CRMError
from src.relay.events.publisher import EventPublisher
from src.relay.events.schemas import EventType
from src.relay.sync.carts import CartRecoveryOrchestrator
from src.relay.sync.schemas import InboundEvent, RecordType, SyncStatus

NOW = datetime(2025, 1, 14, 9, 0, tzinfo=timezone.utc)


def _event(cart_id: str = "cart-1") -> InboundEvent:
    return InboundEvent(scope="store/cart/abandoned", payload={"type": "cart", "id": cart_id})


def _orchestrator(storefront, crm, config, audit_log, **kwargs) -> CartRecoveryOrchestrator:
    return CartRecoveryOrchestrator(
        storefront, crm, config, audit_log, now=lambda: NOW, **kwargs
    )


class TestOpportunityBranch:
    @pytest.mark.asyncio
    async def test_high_value_cart_creates_opportunity(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory(items=[("Chair", 1, 250.0)])
        config = config_factory(opportunity_creation=True)

        outcome = await _orchestrator(storefront, crm, config, audit_log).sync(_event())

        assert outcome.status == SyncStatus.SUCCESS
        assert outcome.record_type == RecordType.OPPORTUNITY
        assert outcome.monetary_value == 250.0
        opportunity = crm.get("Opportunity", outcome.record_id)
        assert opportunity["StageName"] == "Prospecting"
        assert opportunity["Amount"] == 250.0
        assert opportunity["CloseDate"] == "2025-02-13"
        assert opportunity["AccountId"] == outcome.related_ids["account_id"]
        assert crm.of_type("Lead") == []
        assert audit_log.by_operation("CART_SYNC")[0].outcome_status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_line_item_total_against_lowered_threshold(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        # 2 x 20.00 + 1 x 10.00
        storefront.carts["cart-1"] = cart_factory()
        config = config_factory(
            {"opportunity_min_value": 40.0, "cart_expiration_days": 14},
            opportunity_creation=True,
        )

        outcome = await _orchestrator(storefront, crm, config, audit_log).sync(_event())

        assert outcome.record_type == RecordType.OPPORTUNITY
        assert outcome.monetary_value == 50.0
        opportunity = crm.get("Opportunity", outcome.record_id)
        assert opportunity["Name"] == "Abandoned Cart - cart-1"
        assert opportunity["Amount"] == 50.0
        assert opportunity["CloseDate"] == (NOW.date() + timedelta(days=14)).isoformat()
        assert opportunity["LeadSource"] == "Abandoned Cart"
        assert crm.of_type("Lead") == []

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory(base_amount=100.0)
        config = config_factory(opportunity_creation=True)

        outcome = await _orchestrator(storefront, crm, config, audit_log).sync(_event())

        assert outcome.record_type == RecordType.OPPORTUNITY

    @pytest.mark.asyncio
    async def test_high_value_without_opportunity_creation_becomes_lead(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory(items=[("Chair", 1, 250.0)])

        outcome = await _orchestrator(storefront, crm, config_factory(), audit_log).sync(_event())

        assert outcome.record_type == RecordType.LEAD


class TestLeadBranch:
    @pytest.mark.asyncio
    async def test_low_value_cart_creates_lead(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory()

        outcome = await _orchestrator(
            storefront, crm, config_factory(opportunity_creation=True), audit_log
        ).sync(_event())

        assert outcome.record_type == RecordType.LEAD
        assert outcome.monetary_value == 50.0
        lead = crm.get("Lead", outcome.record_id)
        assert lead["Email"] == "sam@example.com"
        assert lead["LeadSource"] == "Abandoned Cart"
        assert lead["AbandonedCartValue__c"] == 50.0
        assert crm.of_type("Opportunity") == []

    @pytest.mark.asyncio
    async def test_second_cart_updates_lead_in_place(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory("cart-1")
        storefront.carts["cart-2"] = cart_factory("cart-2", items=[("Lamp", 1, 80.0)])
        orchestrator = _orchestrator(storefront, crm, config_factory(), audit_log)

        first = await orchestrator.sync(_event("cart-1"))
        second = await orchestrator.sync(_event("cart-2"))

        assert first.record_id == second.record_id
        leads = crm.of_type("Lead")
        assert len(leads) == 1
        assert leads[0]["AbandonedCartId__c"] == "cart-2"
        assert leads[0]["AbandonedCartValue__c"] == 80.0

    @pytest.mark.asyncio
    async def test_most_recent_open_lead_wins(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        crm.add("Lead", Email="sam@example.com", Status="Open - Not Contacted")
        newest = crm.add("Lead", Email="sam@example.com", Status="Open - Not Contacted")
        crm.add("Lead", Email="sam@example.com", Status="Closed - Converted")
        storefront.carts["cart-1"] = cart_factory()

        outcome = await _orchestrator(storefront, crm, config_factory(), audit_log).sync(_event())

        assert outcome.record_id == newest
        assert crm.writes == [("update", "Lead", newest)]

    @pytest.mark.asyncio
    async def test_empty_cart_becomes_lead(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory(items=[])

        outcome = await _orchestrator(
            storefront, crm, config_factory(opportunity_creation=True), audit_log
        ).sync(_event())

        assert outcome.record_type == RecordType.LEAD
        assert outcome.monetary_value == 0.0

    @pytest.mark.asyncio
    async def test_lead_creation_disabled_skips(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory()

        outcome = await _orchestrator(
            storefront, crm, config_factory(lead_creation_low_value=False), audit_log
        ).sync(_event())

        assert outcome.status == SyncStatus.SKIPPED
        assert crm.writes == []
        assert len(audit_log.recent()) == 1


class TestCustomerLookup:
    @pytest.mark.asyncio
    async def test_registered_customer_identity(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory(customer_id=7, email="")
        storefront.carts["cart-1"]["billing_address"]["email"] = ""
        storefront.customers["7"] = {"email": "member@example.com", "first_name": "Mem"}

        outcome = await _orchestrator(storefront, crm, config_factory(), audit_log).sync(_event())

        assert crm.get("Lead", outcome.record_id)["Email"] == "member@example.com"

    @pytest.mark.asyncio
    async def test_customer_lookup_failure_falls_back_to_cart(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory(customer_id=7)
        storefront.fail_on["get_customer"] = ConnectionError("timeout")

        outcome = await _orchestrator(storefront, crm, config_factory(), audit_log).sync(_event())

        assert outcome.status == SyncStatus.SUCCESS
        assert crm.get("Lead", outcome.record_id)["Email"] == "sam@example.com"

    @pytest.mark.asyncio
    async def test_no_email_anywhere_fails(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        cart = cart_factory(email="")
        storefront.carts["cart-1"] = cart

        outcome = await _orchestrator(storefront, crm, config_factory(), audit_log).sync(_event())

        assert outcome.status == SyncStatus.FAILED
        assert outcome.message == "Failed to sync abandoned cart"
        assert crm.writes == []
        assert len(audit_log.failed()) == 1


class TestRecoveryTasks:
    @pytest.mark.asyncio
    async def test_task_linked_to_opportunity(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory(items=[("Sofa", 1, 900.0)])
        config = config_factory(opportunity_creation=True, recovery_tasks=True)

        outcome = await _orchestrator(storefront, crm, config, audit_log).sync(_event())

        task = crm.get("Task", outcome.related_ids["task_id"])
        assert task["WhatId"] == outcome.record_id
        assert task["Priority"] == "High"
        assert task["ActivityDate"] == "2025-01-15"

    @pytest.mark.asyncio
    async def test_task_linked_to_lead(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory()

        outcome = await _orchestrator(
            storefront, crm, config_factory(recovery_tasks=True), audit_log
        ).sync(_event())

        task = crm.get("Task", outcome.related_ids["task_id"])
        assert task["WhoId"] == outcome.record_id
        assert task["Priority"] == "Normal"

    @pytest.mark.asyncio
    async def test_task_failure_is_non_critical(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory()
        crm.fail_on[("create", "Task")] = CRMError("INSUFFICIENT_ACCESS")

        outcome = await _orchestrator(
            storefront, crm, config_factory(recovery_tasks=True), audit_log
        ).sync(_event())

        assert outcome.status == SyncStatus.SUCCESS
        assert "task_id" not in outcome.related_ids


class TestCartEvents:
    @pytest.mark.asyncio
    async def test_cart_abandoned_event(
        self, storefront, crm, audit_log, config_factory, cart_factory
    ):
        storefront.carts["cart-1"] = cart_factory()
        publisher = AsyncMock(spec=EventPublisher)

        outcome = await _orchestrator(
            storefront, crm, config_factory(platform_events=True), audit_log, publisher=publisher
        ).sync(_event())

        event = publisher.publish.await_args.args[0]
        assert event.event_type == EventType.CART_ABANDONED
        assert event.data["lead_id"] == outcome.record_id
        assert event.data["opportunity_id"] is None


class TestExpirationSweep:
    def _seed_opportunity(self, crm, days_old: int, stage: str = "Prospecting", source="Abandoned Cart"):
        return crm.add(
            "Opportunity",
            StageName=stage,
            LeadSource=source,
            Abandoned_Date__c=(NOW - timedelta(days=days_old)).isoformat(),
        )

    @pytest.mark.asyncio
    async def test_closes_only_stale_abandoned_cart_opportunities(
        self, storefront, crm, audit_log, config_factory
    ):
        stale = self._seed_opportunity(crm, 31)
        fresh = self._seed_opportunity(crm, 5)
        other_source = self._seed_opportunity(crm, 60, source="Web")
        won = self._seed_opportunity(crm, 60, stage="Closed Won")

        result = await _orchestrator(
            storefront, crm, config_factory(cart_expiration=True), audit_log
        ).expire_old_opportunities()

        assert (result.found, result.closed, result.failed_ids) == (1, 1, [])
        assert crm.get("Opportunity", stale)["StageName"] == "Closed Lost"
        assert crm.get("Opportunity", stale)["Description"] == "Cart expired - automatically closed"
        for untouched in (fresh, other_source, won):
            assert crm.get("Opportunity", untouched)["StageName"] != "Closed Lost"

    @pytest.mark.asyncio
    async def test_per_record_failures_counted(
        self, storefront, crm, audit_log, config_factory
    ):
        first = self._seed_opportunity(crm, 40)
        second = self._seed_opportunity(crm, 45)
        crm.bulk_failures = {1}

        result = await _orchestrator(
            storefront, crm, config_factory(cart_expiration=True), audit_log
        ).expire_old_opportunities()

        assert result.found == 2
        assert result.closed == 1
        assert len(result.failed_ids) == 1
        assert result.failed_ids[0] in (first, second)

    @pytest.mark.asyncio
    async def test_disabled(self, storefront, crm, audit_log, config_factory):
        self._seed_opportunity(crm, 40)

        result = await _orchestrator(
            storefront, crm, config_factory(), audit_log
        ).expire_old_opportunities()

        assert result.enabled is False
        assert crm.writes == []

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, storefront, crm, audit_log, config_factory):
        result = await _orchestrator(
            storefront, crm, config_factory(cart_expiration=True), audit_log
        ).expire_old_opportunities()

        assert (result.found, result.closed) == (0, 0)
