"""Find-or-create resolution of CRM Account and Contact records.

Resolution is keyed by the normalized email. The find step always runs before
any create, so resolving the same identity twice returns the same IDs. CRM
failures propagate after the retry policy gives up.
"""

from __future__ import annotations

import structlog

from src.relay.clients.crm import CRMClient
from src.relay.config import SyncConfig
from src.relay.sync.mapping import account_record, contact_record
from src.relay.sync.schemas import CustomerIdentity, ResolvedParty

logger = structlog.get_logger(__name__)


class EntityResolver:
    """Resolves a CustomerIdentity to CRM account and contact IDs.

    Args:
        crm: CRM client.
        config: Pipeline configuration (account email field, retry policy).
    """

    def __init__(self, crm: CRMClient, config: SyncConfig) -> None:
        self._crm = crm
        self._config = config

    @property
    def _email_field(self) -> str:
        return self._config.fields.account.email or "PersonEmail"

    async def resolve_account(self, identity: CustomerIdentity) -> str:
        existing = await self._crm.find_records(
            "Account", {self._email_field: identity.email}, limit=1
        )
        if existing:
            account_id = existing[0]["Id"]
            logger.info("resolver.account_found", account_id=account_id)
            return account_id

        account_id = await self._crm.create_record(
            "Account", account_record(identity, self._email_field)
        )
        logger.info("resolver.account_created", account_id=account_id)
        return account_id

    async def resolve_contact(
        self, identity: CustomerIdentity, account_id: str | None = None
    ) -> str:
        existing = await self._crm.find_records("Contact", {"Email": identity.email}, limit=1)
        if existing:
            contact_id = existing[0]["Id"]
            logger.info("resolver.contact_found", contact_id=contact_id)
            return contact_id

        contact_id = await self._crm.create_record("Contact", contact_record(identity, account_id))
        logger.info("resolver.contact_created", contact_id=contact_id, account_id=account_id)
        return contact_id

    async def resolve(self, identity: CustomerIdentity) -> ResolvedParty:
        """Resolve account then contact, each under the retry policy."""
        retry = self._config.retry
        account_id = await retry.run(
            lambda: self.resolve_account(identity), operation="resolve_account"
        )
        contact_id = await retry.run(
            lambda: self.resolve_contact(identity, account_id), operation="resolve_contact"
        )
        return ResolvedParty(account_id=account_id, contact_id=contact_id)
