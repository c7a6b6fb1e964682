"""CRM client -- abstract interface plus the Salesforce REST implementation.

Every pipeline component talks to the CRM through ``CRMClient`` so tests and
alternative backends can substitute their own implementation.

SalesforceClient details:
- OAuth 2.0 username-password flow; the session token is shared by all
  in-flight requests
- Re-authentication is single-flight behind an asyncio.Lock: concurrent
  callers that observe the same stale token trigger one login
- A 401 response marks the session stale, re-authenticates once and
  replays the request
- Bulk writes go through the composite sobjects endpoint in chunks of 200
  with ``allOrNone=false`` so each record keeps its own result
- No retries here: callers wrap operations with the retry policy
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from src.relay.clients.soql import build_soql
from src.relay.core.monitoring import crm_session_authenticated

logger = structlog.get_logger(__name__)

BULK_CHUNK_SIZE = 200


class CRMError(Exception):
    """A CRM request failed or the CRM rejected a record."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class BulkResult(BaseModel):
    """Per-record result of a bulk create or update."""

    index: int
    success: bool
    id: str | None = None
    errors: list[str] = Field(default_factory=list)


class CRMClient(ABC):
    """Abstract interface for CRM operations used by the sync pipeline."""

    @property
    @abstractmethod
    def is_authenticated(self) -> bool:
        """True while a session is established."""
        ...

    @abstractmethod
    async def authenticate(self) -> None:
        """Establish a new session."""
        ...

    @abstractmethod
    async def query(self, soql: str) -> list[dict[str, Any]]:
        """Run a raw SOQL query and return every matching record."""
        ...

    @abstractmethod
    async def find_records(
        self,
        sobject: str,
        criteria: Mapping[str, Any],
        fields: Sequence[str] = ("Id",),
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Find records matching all criteria."""
        ...

    @abstractmethod
    async def create_record(self, sobject: str, data: Mapping[str, Any]) -> str:
        """Create a record and return its ID."""
        ...

    @abstractmethod
    async def update_record(self, sobject: str, record_id: str, data: Mapping[str, Any]) -> None:
        """Update fields of an existing record."""
        ...

    @abstractmethod
    async def create_bulk(
        self, sobject: str, records: Sequence[Mapping[str, Any]]
    ) -> list[BulkResult]:
        """Create many records, returning one result per input record."""
        ...

    @abstractmethod
    async def update_bulk(
        self, sobject: str, records: Sequence[Mapping[str, Any]]
    ) -> list[BulkResult]:
        """Update many records (each must carry ``Id``)."""
        ...

    @abstractmethod
    async def upsert_record(
        self,
        sobject: str,
        external_id_field: str,
        external_id: str,
        data: Mapping[str, Any],
    ) -> str | None:
        """Insert or update by external ID. Returns the record ID when known."""
        ...


def _error_messages(payload: Any) -> list[str]:
    if isinstance(payload, list):
        return [
            f"{item.get('errorCode') or item.get('statusCode', 'ERROR')}: {item.get('message', '')}"
            for item in payload
            if isinstance(item, dict)
        ]
    if isinstance(payload, dict) and "message" in payload:
        return [str(payload["message"])]
    return []


def _strip_attributes(record: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k != "attributes"}


class SalesforceClient(CRMClient):
    """Salesforce REST API client.

    Args:
        login_url: OAuth login host, e.g. ``https://login.salesforce.com``.
        client_id: Connected app consumer key.
        client_secret: Connected app consumer secret.
        username: Integration user name.
        password: Integration user password.
        security_token: Appended to the password when set.
        api_version: REST API version, e.g. ``v57.0``.
        transport: Optional httpx transport (tests use MockTransport).
    """

    TIMEOUT = 30.0

    def __init__(
        self,
        login_url: str,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        security_token: str = "",
        api_version: str = "v57.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._login_url = login_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._username = username
        self._password = password
        self._security_token = security_token
        self._api_version = api_version
        self._transport = transport
        self._access_token: str | None = None
        self._instance_url: str | None = None
        self._auth_lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.TIMEOUT, transport=self._transport)

    @property
    def is_authenticated(self) -> bool:
        return self._access_token is not None

    # ── Session ────────────────────────────────────────────────────────

    async def authenticate(self) -> None:
        """Log in with the username-password OAuth flow."""
        logger.info("crm.authenticating", login_url=self._login_url)
        async with self._client() as client:
            response = await client.post(
                f"{self._login_url}/services/oauth2/token",
                data={
                    "grant_type": "password",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "username": self._username,
                    "password": self._password + self._security_token,
                },
            )

        if response.status_code != 200:
            self._access_token = None
            crm_session_authenticated.set(0)
            logger.error("crm.authentication_failed", status_code=response.status_code)
            raise CRMError("CRM authentication failed", status_code=response.status_code)

        payload = response.json()
        self._access_token = payload["access_token"]
        self._instance_url = payload["instance_url"].rstrip("/")
        crm_session_authenticated.set(1)
        logger.info("crm.authenticated", instance_url=self._instance_url)

    async def _ensure_session(self, stale_token: str | None = None) -> str:
        """Return a usable token, logging in at most once per stale token."""
        token = self._access_token
        if token is not None and token != stale_token:
            return token
        async with self._auth_lock:
            token = self._access_token
            if token is not None and token != stale_token:
                return token
            await self.authenticate()
            return self._access_token  # type: ignore[return-value]

    # ── Transport ──────────────────────────────────────────────────────

    def _url(self, path: str) -> str:
        if path.startswith("/services/"):
            return f"{self._instance_url}{path}"
        return f"{self._instance_url}/services/data/{self._api_version}{path}"

    async def _send(self, method: str, path: str, token: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            return await client.request(
                method,
                self._url(path),
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._ensure_session()
        response = await self._send(method, path, token, **kwargs)

        if response.status_code == 401:
            logger.info("crm.session_stale", path=path)
            crm_session_authenticated.set(0)
            token = await self._ensure_session(stale_token=token)
            response = await self._send(method, path, token, **kwargs)

        if response.status_code >= 400:
            try:
                errors = _error_messages(response.json())
            except ValueError:
                errors = [response.text[:200]]
            logger.error(
                "crm.request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                errors=errors,
            )
            raise CRMError(
                f"CRM request {method} {path} failed with {response.status_code}",
                status_code=response.status_code,
                errors=errors,
            )
        return response

    # ── Queries ────────────────────────────────────────────────────────

    async def query(self, soql: str) -> list[dict[str, Any]]:
        response = await self._request("GET", "/query", params={"q": soql})
        payload = response.json()
        records = [_strip_attributes(r) for r in payload.get("records", [])]

        while not payload.get("done", True) and payload.get("nextRecordsUrl"):
            response = await self._request("GET", payload["nextRecordsUrl"])
            payload = response.json()
            records.extend(_strip_attributes(r) for r in payload.get("records", []))

        logger.debug("crm.query_completed", record_count=len(records))
        return records

    async def find_records(
        self,
        sobject: str,
        criteria: Mapping[str, Any],
        fields: Sequence[str] = ("Id",),
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        soql = build_soql(sobject, fields, criteria, order_by=order_by, limit=limit)
        return await self.query(soql)

    # ── Single-record writes ───────────────────────────────────────────

    async def create_record(self, sobject: str, data: Mapping[str, Any]) -> str:
        response = await self._request("POST", f"/sobjects/{sobject}/", json=dict(data))
        payload = response.json()
        if not payload.get("success", False):
            raise CRMError(
                f"Failed to create {sobject}",
                status_code=response.status_code,
                errors=_error_messages(payload.get("errors", [])),
            )
        logger.info("crm.record_created", sobject=sobject, record_id=payload["id"])
        return payload["id"]

    async def update_record(self, sobject: str, record_id: str, data: Mapping[str, Any]) -> None:
        body = {k: v for k, v in data.items() if k != "Id"}
        await self._request("PATCH", f"/sobjects/{sobject}/{record_id}", json=body)
        logger.info("crm.record_updated", sobject=sobject, record_id=record_id)

    async def upsert_record(
        self,
        sobject: str,
        external_id_field: str,
        external_id: str,
        data: Mapping[str, Any],
    ) -> str | None:
        response = await self._request(
            "PATCH",
            f"/sobjects/{sobject}/{external_id_field}/{external_id}",
            json=dict(data),
        )
        record_id = response.json().get("id") if response.content else None
        logger.info(
            "crm.record_upserted",
            sobject=sobject,
            external_id_field=external_id_field,
            record_id=record_id,
        )
        return record_id

    # ── Bulk writes ────────────────────────────────────────────────────

    async def _composite(
        self, method: str, sobject: str, records: Sequence[Mapping[str, Any]]
    ) -> list[BulkResult]:
        results: list[BulkResult] = []
        for start in range(0, len(records), BULK_CHUNK_SIZE):
            chunk = records[start:start + BULK_CHUNK_SIZE]
            body = {
                "allOrNone": False,
                "records": [{"attributes": {"type": sobject}, **r} for r in chunk],
            }
            try:
                response = await self._request(method, "/composite/sobjects", json=body)
                items = response.json()
            except (CRMError, httpx.HTTPError) as exc:
                logger.warning(
                    "crm.bulk_chunk_failed",
                    sobject=sobject,
                    chunk_start=start,
                    chunk_size=len(chunk),
                    error=str(exc),
                )
                results.extend(
                    BulkResult(
                        index=start + i, success=False, id=record.get("Id"), errors=[str(exc)]
                    )
                    for i, record in enumerate(chunk)
                )
                continue

            for i, item in enumerate(items):
                results.append(
                    BulkResult(
                        index=start + i,
                        success=bool(item.get("success")),
                        id=item.get("id") or chunk[i].get("Id"),
                        errors=_error_messages(item.get("errors", [])),
                    )
                )

        logger.info(
            "crm.bulk_completed",
            sobject=sobject,
            method=method,
            total=len(records),
            successful=sum(1 for r in results if r.success),
        )
        return results

    async def create_bulk(
        self, sobject: str, records: Sequence[Mapping[str, Any]]
    ) -> list[BulkResult]:
        return await self._composite("POST", sobject, records)

    async def update_bulk(
        self, sobject: str, records: Sequence[Mapping[str, Any]]
    ) -> list[BulkResult]:
        return await self._composite("PATCH", sobject, records)


def failed_results(results: Iterable[BulkResult]) -> list[BulkResult]:
    """Return only the failed entries of a bulk result list."""
    return [r for r in results if not r.success]
