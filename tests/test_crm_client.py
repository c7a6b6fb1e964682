"""Tests for SalesforceClient over an httpx MockTransport.

Covers:
    - Username-password login stores the session and instance URL
    - Failed login raises CRMError
    - 401 triggers one re-authentication and a replay
    - Concurrent callers share a single login (single-flight)
    - Query pagination through nextRecordsUrl, attributes stripped
    - create_record / update_record request shapes
    - Bulk create: per-record failures and failed chunks do not abort the sweep
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from src.relay.clients.crm import BULK_CHUNK_SIZE, CRMError, SalesforceClient, failed_results

INSTANCE = "https://acme.my.salesforce.com"
LOGIN = "https://login.salesforce.com"
API = f"{INSTANCE}/services/data/v57.0"


class FakeSalesforce:
    """Routes MockTransport requests to canned Salesforce responses."""

    def __init__(self) -> None:
        self.logins = 0
        self.requests: list[httpx.Request] = []
        self.login_status = 200
        self.expire_tokens: set[str] = set()
        self.fail_chunks: set[int] = set()
        self.query_pages: list[dict[str, Any]] = [{"done": True, "records": []}]
        self._composite_calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url == f"{LOGIN}/services/oauth2/token":
            if self.login_status != 200:
                return httpx.Response(self.login_status, json={"error": "invalid_grant"})
            self.logins += 1
            return httpx.Response(
                200, json={"access_token": f"token-{self.logins}", "instance_url": INSTANCE}
            )

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.expire_tokens:
            return httpx.Response(401, json=[{"errorCode": "INVALID_SESSION_ID", "message": "expired"}])

        path = request.url.path
        if path.endswith("/query"):
            return httpx.Response(200, json=self.query_pages[0])
        if path.startswith("/services/data/v57.0/query/next"):
            return httpx.Response(200, json=self.query_pages[1])
        if path.endswith("/composite/sobjects"):
            chunk = self._composite_calls
            self._composite_calls += 1
            if chunk in self.fail_chunks:
                return httpx.Response(500, json=[{"errorCode": "SERVER_ERROR", "message": "boom"}])
            records = json.loads(request.content)["records"]
            return httpx.Response(
                200,
                json=[
                    {"id": f"801{chunk:02d}{i:04d}", "success": True, "errors": []}
                    for i in range(len(records))
                ],
            )
        if request.method == "POST" and "/sobjects/" in path:
            return httpx.Response(201, json={"id": "001000000000001", "success": True, "errors": []})
        if request.method == "PATCH":
            return httpx.Response(204)
        return httpx.Response(404, json=[{"errorCode": "NOT_FOUND", "message": path}])


@pytest.fixture
def server() -> FakeSalesforce:
    return FakeSalesforce()


@pytest.fixture
def client(server: FakeSalesforce) -> SalesforceClient:
    return SalesforceClient(
        login_url=LOGIN,
        client_id="cid",
        client_secret="secret",
        username="integration@acme.com",
        password="pw",
        security_token="tok",
        transport=httpx.MockTransport(server.handler),
    )


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_login_sets_session(self, client, server):
        assert client.is_authenticated is False
        await client.authenticate()
        assert client.is_authenticated is True
        login = server.requests[0]
        assert b"password=pwtok" in login.content

    @pytest.mark.asyncio
    async def test_failed_login_raises(self, client, server):
        server.login_status = 400
        with pytest.raises(CRMError) as excinfo:
            await client.authenticate()
        assert excinfo.value.status_code == 400
        assert client.is_authenticated is False

    @pytest.mark.asyncio
    async def test_first_request_logs_in_lazily(self, client, server):
        await client.query("SELECT Id FROM Account")
        assert server.logins == 1

    @pytest.mark.asyncio
    async def test_401_reauthenticates_and_replays(self, client, server):
        await client.authenticate()
        server.expire_tokens.add("token-1")

        await client.update_record("Account", "001A", {"Name": "Acme"})

        assert server.logins == 2
        patches = [r for r in server.requests if r.method == "PATCH"]
        assert [r.headers["Authorization"] for r in patches] == [
            "Bearer token-1",
            "Bearer token-2",
        ]

    @pytest.mark.asyncio
    async def test_concurrent_stale_session_logs_in_once(self, client, server):
        await asyncio.gather(*(client.query("SELECT Id FROM Lead") for _ in range(5)))
        assert server.logins == 1

    @pytest.mark.asyncio
    async def test_concurrent_401s_share_one_reauth(self, client, server):
        await client.authenticate()
        server.expire_tokens.add("token-1")

        await asyncio.gather(
            *(client.update_record("Lead", f"00Q{i}", {"Status": "Open"}) for i in range(4))
        )

        assert server.logins == 2


class TestQueries:
    @pytest.mark.asyncio
    async def test_pagination_and_attribute_stripping(self, client, server):
        server.query_pages = [
            {
                "done": False,
                "nextRecordsUrl": "/services/data/v57.0/query/next-2000",
                "records": [{"attributes": {"type": "Order"}, "Id": "801A"}],
            },
            {"done": True, "records": [{"attributes": {"type": "Order"}, "Id": "801B"}]},
        ]
        records = await client.query("SELECT Id FROM Order")
        assert records == [{"Id": "801A"}, {"Id": "801B"}]

    @pytest.mark.asyncio
    async def test_find_records_builds_escaped_soql(self, client, server):
        await client.find_records("Contact", {"Email": "o'neil@example.com"}, limit=1)
        query = [r for r in server.requests if r.url.path.endswith("/query")][0]
        assert query.url.params["q"] == (
            "SELECT Id FROM Contact WHERE Email = 'o\\'neil@example.com' LIMIT 1"
        )


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_record_returns_id(self, client, server):
        record_id = await client.create_record("Account", {"Name": "Acme"})
        assert record_id == "001000000000001"
        create = server.requests[-1]
        assert str(create.url) == f"{API}/sobjects/Account/"

    @pytest.mark.asyncio
    async def test_update_record_drops_id_from_body(self, client, server):
        await client.update_record("Account", "001A", {"Id": "001A", "Name": "Acme"})
        patch = server.requests[-1]
        assert str(patch.url) == f"{API}/sobjects/Account/001A"
        assert json.loads(patch.content) == {"Name": "Acme"}

    @pytest.mark.asyncio
    async def test_http_error_raises_crm_error(self, client, server):
        with pytest.raises(CRMError) as excinfo:
            await client._request("GET", "/nope")
        assert excinfo.value.status_code == 404


class TestBulk:
    @pytest.mark.asyncio
    async def test_chunks_of_200(self, client, server):
        records = [{"Description": f"item {i}"} for i in range(BULK_CHUNK_SIZE + 5)]
        results = await client.create_bulk("OrderItem", records)
        composite = [r for r in server.requests if r.url.path.endswith("/composite/sobjects")]
        assert len(composite) == 2
        assert len(results) == BULK_CHUNK_SIZE + 5
        assert [r.index for r in results] == list(range(BULK_CHUNK_SIZE + 5))
        assert failed_results(results) == []

    @pytest.mark.asyncio
    async def test_failed_chunk_marks_records_and_continues(self, client, server):
        server.fail_chunks = {0}
        records = [{"Description": f"item {i}"} for i in range(BULK_CHUNK_SIZE + 3)]
        results = await client.create_bulk("OrderItem", records)
        failures = failed_results(results)
        assert len(failures) == BULK_CHUNK_SIZE
        assert all(r.success for r in results[BULK_CHUNK_SIZE:])

    @pytest.mark.asyncio
    async def test_update_bulk_keeps_record_ids(self, client, server):
        server.fail_chunks = {0}
        results = await client.update_bulk("Opportunity", [{"Id": "006A", "StageName": "Closed Lost"}])
        assert results[0].success is False
        assert results[0].index == 0
        assert results[0].id == "006A"
