"""Tests for EntityResolver find-or-create semantics."""

from __future__ import annotations

import pytest

from src.relay.clients.crm import CRMError
from src.relay.config import AccountFields, CustomFields
from src.relay.sync.resolver import EntityResolver
from src.relay.sync.schemas import CustomerIdentity


def _identity(email: str = "jane@example.com") -> CustomerIdentity:
    return CustomerIdentity(first_name="Jane", last_name="Doe", email=email, city="Austin")


class TestEntityResolver:
    @pytest.mark.asyncio
    async def test_creates_account_and_contact(self, crm, config_factory):
        party = await EntityResolver(crm, config_factory()).resolve(_identity())

        account = crm.get("Account", party.account_id)
        contact = crm.get("Contact", party.contact_id)
        assert account["PersonEmail"] == "jane@example.com"
        assert account["Name"] == "Jane Doe"
        assert contact["AccountId"] == party.account_id
        assert contact["Email"] == "jane@example.com"

    @pytest.mark.asyncio
    async def test_idempotent(self, crm, config_factory):
        resolver = EntityResolver(crm, config_factory())
        first = await resolver.resolve(_identity())
        second = await resolver.resolve(_identity("JANE@example.com "))

        assert first == second
        assert len(crm.of_type("Account")) == 1
        assert len(crm.of_type("Contact")) == 1

    @pytest.mark.asyncio
    async def test_finds_existing_records(self, crm, config_factory):
        account_id = crm.add("Account", PersonEmail="jane@example.com", Name="Jane Doe")
        contact_id = crm.add("Contact", Email="jane@example.com", AccountId=account_id)

        party = await EntityResolver(crm, config_factory()).resolve(_identity())

        assert (party.account_id, party.contact_id) == (account_id, contact_id)
        assert crm.writes == []

    @pytest.mark.asyncio
    async def test_configured_email_field(self, crm, config_factory):
        config = config_factory(fields=CustomFields(account=AccountFields(email="Email__c")))
        party = await EntityResolver(crm, config).resolve(_identity())
        assert crm.get("Account", party.account_id)["Email__c"] == "jane@example.com"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, crm, config_factory):
        crm.fail_on[("find", "Account")] = CRMError("timeout", status_code=503)
        crm.fail_times[("find", "Account")] = 1

        party = await EntityResolver(crm, config_factory(max_attempts=2)).resolve(_identity())

        assert party.account_id
        assert crm.calls.count(("find", "Account")) == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_propagates(self, crm, config_factory):
        crm.fail_on[("create", "Contact")] = CRMError("REQUIRED_FIELD_MISSING", status_code=400)

        with pytest.raises(CRMError):
            await EntityResolver(crm, config_factory(max_attempts=2)).resolve(_identity())
        assert crm.calls.count(("create", "Contact")) == 2
