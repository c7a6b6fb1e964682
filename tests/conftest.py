"""Shared fixtures for relay tests.

Provides:
- InMemoryCRM: CRMClient test double with write tracking and failure injection
- FakeStorefront: storefront test double with canned orders, carts, customers
- make_config: SyncConfig factory with zero-delay retries
- Payload builders for storefront orders and carts
"""

from __future__ import annotations

import operator
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

import pytest

from src.relay.audit.service import AuditLog
from src.relay.audit.store import InMemoryAuditStore
from src.relay.clients.crm import BulkResult, CRMClient, CRMError
from src.relay.config import CustomFields, FeatureFlags, SyncConfig, Thresholds
from src.relay.core.retry import RetryPolicy

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


# ── CRM Test Double ──────────────────────────────────────────────────────────


class InMemoryCRM(CRMClient):
    """In-memory CRMClient for testing without a CRM org.

    ``writes`` records every create/update in order. ``fail_on`` maps
    ``(operation, sobject)`` to an exception raised on every matching call;
    ``fail_times`` limits how many calls fail before succeeding.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.writes: list[tuple[str, str, str]] = []
        self.fail_on: dict[tuple[str, str], Exception] = {}
        self.fail_times: dict[tuple[str, str], int] = {}
        self.bulk_failures: set[int] = set()
        self.calls: list[tuple[str, str]] = []
        self._authenticated = True
        self._seq = 0

    # -- helpers

    def _next_id(self, sobject: str) -> str:
        self._seq += 1
        return f"{sobject[:3].upper()}{self._seq:05d}"

    def _stamp(self) -> str:
        self._seq += 1
        return f"2026-01-01T00:00:00.{self._seq:06d}Z"

    def _check(self, op: str, sobject: str) -> None:
        self.calls.append((op, sobject))
        key = (op, sobject)
        exc = self.fail_on.get(key)
        if exc is None:
            return
        remaining = self.fail_times.get(key)
        if remaining is not None:
            if remaining <= 0:
                return
            self.fail_times[key] = remaining - 1
        raise exc

    @staticmethod
    def _matches(record: dict[str, Any], criteria: Mapping[str, Any]) -> bool:
        for field, expected in criteria.items():
            actual = record.get(field)
            op = "="
            if isinstance(expected, tuple):
                op, expected = expected
            if isinstance(expected, datetime):
                if not actual:
                    return False
                actual = datetime.fromisoformat(str(actual).replace("Z", "+00:00"))
            if not _COMPARATORS[op](actual, expected):
                return False
        return True

    def add(self, sobject: str, **fields: Any) -> str:
        """Seed a record without counting it as a pipeline write."""
        record_id = fields.pop("Id", None) or self._next_id(sobject)
        record = {"Id": record_id, "LastModifiedDate": self._stamp(), **fields}
        self.records[sobject][record_id] = record
        return record_id

    def get(self, sobject: str, record_id: str) -> dict[str, Any]:
        return self.records[sobject][record_id]

    def of_type(self, sobject: str) -> list[dict[str, Any]]:
        return list(self.records[sobject].values())

    # -- CRMClient

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    async def authenticate(self) -> None:
        self._authenticated = True

    async def query(self, soql: str) -> list[dict[str, Any]]:
        self._check("query", "*")
        return []

    async def find_records(
        self,
        sobject: str,
        criteria: Mapping[str, Any],
        fields: Sequence[str] = ("Id",),
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._check("find", sobject)
        matches = [dict(r) for r in self.records[sobject].values() if self._matches(r, criteria)]
        if order_by:
            field, _, direction = order_by.partition(" ")
            matches.sort(
                key=lambda r: str(r.get(field) or ""),
                reverse=direction.strip().upper() == "DESC",
            )
        if limit is not None:
            matches = matches[:limit]
        return matches

    async def create_record(self, sobject: str, data: Mapping[str, Any]) -> str:
        self._check("create", sobject)
        record_id = self._next_id(sobject)
        self.records[sobject][record_id] = {
            "Id": record_id,
            "LastModifiedDate": self._stamp(),
            **data,
        }
        self.writes.append(("create", sobject, record_id))
        return record_id

    async def update_record(self, sobject: str, record_id: str, data: Mapping[str, Any]) -> None:
        self._check("update", sobject)
        if record_id not in self.records[sobject]:
            raise CRMError(f"{sobject} {record_id} not found", status_code=404)
        self.records[sobject][record_id].update(
            {k: v for k, v in data.items() if k != "Id"}, LastModifiedDate=self._stamp()
        )
        self.writes.append(("update", sobject, record_id))

    async def create_bulk(
        self, sobject: str, records: Sequence[Mapping[str, Any]]
    ) -> list[BulkResult]:
        self._check("create_bulk", sobject)
        results = []
        for i, data in enumerate(records):
            if i in self.bulk_failures:
                results.append(BulkResult(index=i, success=False, errors=["REQUIRED_FIELD_MISSING: x"]))
                continue
            record_id = await self.create_record(sobject, data)
            results.append(BulkResult(index=i, success=True, id=record_id))
        return results

    async def update_bulk(
        self, sobject: str, records: Sequence[Mapping[str, Any]]
    ) -> list[BulkResult]:
        self._check("update_bulk", sobject)
        results = []
        for i, data in enumerate(records):
            if i in self.bulk_failures:
                results.append(BulkResult(index=i, success=False, id=data["Id"], errors=["LOCKED"]))
                continue
            await self.update_record(sobject, data["Id"], data)
            results.append(BulkResult(index=i, success=True, id=data["Id"]))
        return results

    async def upsert_record(
        self,
        sobject: str,
        external_id_field: str,
        external_id: str,
        data: Mapping[str, Any],
    ) -> str | None:
        existing = await self.find_records(sobject, {external_id_field: external_id}, limit=1)
        if existing:
            await self.update_record(sobject, existing[0]["Id"], data)
            return existing[0]["Id"]
        return await self.create_record(sobject, {external_id_field: external_id, **data})


# ── Storefront Test Double ───────────────────────────────────────────────────


class FakeStorefront:
    """Canned storefront responses keyed by string ID."""

    def __init__(self) -> None:
        self.orders: dict[str, dict[str, Any]] = {}
        self.products: dict[str, list[dict[str, Any]]] = {}
        self.shipping_addresses: dict[str, list[dict[str, Any]]] = {}
        self.carts: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, dict[str, Any]] = {}
        self.fail_on: dict[str, Exception] = {}
        self.calls: list[tuple[str, Any]] = []

    def _call(self, name: str, arg: Any) -> None:
        self.calls.append((name, arg))
        if name in self.fail_on:
            raise self.fail_on[name]

    async def get_order(self, order_id):
        self._call("get_order", order_id)
        return self.orders[str(order_id)]

    async def get_order_products(self, order_id):
        self._call("get_order_products", order_id)
        return self.products.get(str(order_id), [])

    async def get_order_shipping_addresses(self, order_id):
        self._call("get_order_shipping_addresses", order_id)
        return self.shipping_addresses.get(str(order_id), [])

    async def get_cart(self, cart_id):
        self._call("get_cart", cart_id)
        return self.carts[str(cart_id)]

    async def get_customer(self, customer_id):
        self._call("get_customer", customer_id)
        return self.customers.get(str(customer_id))


# ── Payload builders ─────────────────────────────────────────────────────────


def build_order(
    order_id: int = 100,
    status: str = "Completed",
    total: str = "150.0000",
    email: str = "jane@example.com",
    **overrides: Any,
) -> dict[str, Any]:
    order = {
        "id": order_id,
        "status": status,
        "date_created": "Tue, 14 Jan 2025 10:30:00 +0000",
        "total_inc_tax": total,
        "subtotal_inc_tax": "140.0000",
        "total_tax": "10.0000",
        "shipping_cost_inc_tax": "0.0000",
        "payment_method": "Credit Card",
        "payment_provider_id": "txn_123",
        "customer_email": email,
        "billing_address": {
            "first_name": "Jane",
            "last_name": "Doe",
            "email": email,
            "phone": "555-0100",
            "company": "",
            "street_1": "1 Main St",
            "city": "Austin",
            "state": "Texas",
            "zip": "78701",
            "country": "United States",
        },
        "shipping_addresses": [
            {"street_1": "2 Side St", "city": "Austin", "state": "Texas", "zip": "78702", "country": "United States"}
        ],
    }
    order.update(overrides)
    return order


def build_cart(
    cart_id: str = "cart-1",
    items: list[tuple[str, int, float]] | None = None,
    email: str = "sam@example.com",
    base_amount: float | None = None,
    customer_id: int = 0,
) -> dict[str, Any]:
    items = items if items is not None else [("Mug", 2, 20.0), ("Pen", 1, 10.0)]
    cart: dict[str, Any] = {
        "id": cart_id,
        "customer_id": customer_id,
        "email": email,
        "billing_address": {"first_name": "Sam", "last_name": "Lee", "email": email},
        "line_items": {
            "physical_items": [
                {"name": name, "quantity": qty, "list_price": price} for name, qty, price in items
            ],
            "digital_items": [],
        },
    }
    if base_amount is not None:
        cart["base_amount"] = base_amount
    return cart


def make_config(
    thresholds: dict[str, Any] | None = None,
    fields: CustomFields | None = None,
    max_attempts: int = 2,
    **features: bool,
) -> SyncConfig:
    """SyncConfig with the given feature flags and zero retry delay."""
    return SyncConfig(
        features=FeatureFlags(**features),
        thresholds=Thresholds(**(thresholds or {})),
        retry=RetryPolicy(max_attempts=max_attempts, base_delay=0.0),
        fields=fields or CustomFields(),
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def crm() -> InMemoryCRM:
    return InMemoryCRM()


@pytest.fixture
def storefront() -> FakeStorefront:
    return FakeStorefront()


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog(InMemoryAuditStore(capacity=1000))


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def order_factory():
    return build_order


@pytest.fixture
def cart_factory():
    return build_cart
