"""Storefront → CRM mapping tables and record builders.

Defines:
- ELIGIBLE_ORDER_STATUSES: Storefront statuses that trigger an order sync.
- ORDER_STATUS_MAP: Storefront status → CRM Order status, unknown → Draft.
- identity_from_order() / identity_from_cart(): CustomerIdentity extraction.
- cart_value() / cart_description(): abandoned cart helpers.
- *_record(): builders for every CRM record the pipeline writes.

All builders are pure functions of their inputs and the injected
CustomFields; an empty custom field name leaves that field out.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

from pydantic import ValidationError

from src.relay.config import CustomFields
from src.relay.sync.schemas import CustomerIdentity, IdentityError, RecordType

# ── Lookup Tables ──────────────────────────────────────────────────────────

ELIGIBLE_ORDER_STATUSES: frozenset[str] = frozenset({
    "Completed",
    "Shipped",
    "Awaiting Shipment",
})

DEFAULT_ORDER_STATUS = "Draft"

ORDER_STATUS_MAP: dict[str, str] = {
    "Pending": "Draft",
    "Declined": "Draft",
    "Awaiting Payment": "Draft",
    "Manual Verification Required": "Draft",
    "Shipped": "Activated",
    "Partially Shipped": "Activated",
    "Refunded": "Activated",
    "Cancelled": "Activated",
    "Awaiting Pickup": "Activated",
    "Awaiting Shipment": "Activated",
    "Completed": "Activated",
    "Awaiting Fulfillment": "Activated",
    "Disputed": "Activated",
    "Partially Refunded": "Activated",
}

LEAD_SOURCE = "Abandoned Cart"
OPEN_LEAD_STATUS = "Open - Not Contacted"
OPPORTUNITY_OPEN_STAGE = "Prospecting"
OPPORTUNITY_EXPIRED_STAGE = "Closed Lost"
EXPIRED_DESCRIPTION = "Cart expired - automatically closed"


def crm_order_status(storefront_status: Optional[str]) -> str:
    """Translate a storefront order status; unrecognized → Draft."""
    return ORDER_STATUS_MAP.get(storefront_status or "", DEFAULT_ORDER_STATUS)


def is_eligible_order(storefront_status: Optional[str]) -> bool:
    return storefront_status in ELIGIBLE_ORDER_STATUSES


# ── Value helpers ──────────────────────────────────────────────────────────


def to_amount(value: Any) -> float:
    """Parse a storefront money value ("150.0000", 150, None) to float."""
    if value in (None, ""):
        return 0.0
    return float(value)


def parse_storefront_date(value: Any) -> date:
    """Date part of a storefront timestamp (RFC 2822 in v2, ISO 8601 in v3)."""
    if isinstance(value, datetime):
        return value.date()
    if not value:
        return datetime.now(timezone.utc).date()
    text = str(value)
    try:
        return parsedate_to_datetime(text).date()
    except (TypeError, ValueError):
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


def _put(record: dict[str, Any], field: str, value: Any) -> None:
    if field:
        record[field] = value


# ── Identity ───────────────────────────────────────────────────────────────


def _identity(source: dict[str, Any], email: Any) -> CustomerIdentity:
    if not email or not str(email).strip():
        raise IdentityError("customer email is missing")
    try:
        return CustomerIdentity(
            first_name=source.get("first_name") or "Unknown",
            last_name=source.get("last_name") or "Customer",
            email=str(email),
            phone=source.get("phone") or "",
            company=source.get("company") or "",
            address_1=source.get("street_1") or source.get("address1") or "",
            city=source.get("city") or "",
            state=source.get("state") or source.get("state_or_province") or "",
            zip=source.get("zip") or source.get("postal_code") or "",
            country=source.get("country") or "",
        )
    except ValidationError as exc:
        raise IdentityError(f"invalid customer identity: {exc.errors()[0]['msg']}") from exc


def identity_from_order(order: dict[str, Any]) -> CustomerIdentity:
    """Identity from the order billing address, falling back to customer_email.

    Raises:
        IdentityError: Neither the billing address nor the order has an email.
    """
    billing = order.get("billing_address") or {}
    return _identity(billing, billing.get("email") or order.get("customer_email"))


def identity_from_cart(
    cart: dict[str, Any],
    customer: Optional[dict[str, Any]] = None,
) -> CustomerIdentity:
    """Identity from the storefront customer record, else the cart billing address.

    Raises:
        IdentityError: No email on the customer, the billing address or the cart.
    """
    billing = cart.get("billing_address") or {}
    if customer:
        email = customer.get("email") or cart.get("email") or billing.get("email")
        return _identity({**billing, **{k: v for k, v in customer.items() if v}}, email)
    return _identity(billing, billing.get("email") or cart.get("email"))


# ── Carts ──────────────────────────────────────────────────────────────────


def _physical_items(cart: dict[str, Any]) -> list[dict[str, Any]]:
    items = (cart.get("line_items") or {}).get("physical_items")
    return items if isinstance(items, list) else []


def cart_value(cart: dict[str, Any]) -> float:
    """Prefer ``base_amount``; else Σ list_price × quantity over physical items."""
    base_amount = to_amount(cart.get("base_amount"))
    if base_amount:
        return base_amount
    return sum(
        to_amount(item.get("list_price")) * int(item.get("quantity") or 0)
        for item in _physical_items(cart)
    )


def cart_description(cart: dict[str, Any], abandoned_at: datetime) -> str:
    lines = [
        f"- {item.get('name')} (Qty: {item.get('quantity')}, Price: ${item.get('list_price')})"
        for item in _physical_items(cart)
    ]
    return (
        f"Abandoned Cart\nCart ID: {cart.get('id')}\n"
        f"Abandoned: {abandoned_at.isoformat()}\n\nItems:\n" + "\n".join(lines)
    )


# ── Record builders ────────────────────────────────────────────────────────


def account_record(identity: CustomerIdentity, email_field: str) -> dict[str, Any]:
    record: dict[str, Any] = {
        "Name": identity.company or identity.display_name,
        "BillingStreet": identity.address_1,
        "BillingCity": identity.city,
        "BillingState": identity.state,
        "BillingPostalCode": identity.zip,
        "BillingCountry": identity.country,
        "Phone": identity.phone,
    }
    _put(record, email_field, identity.email)
    return record


def contact_record(identity: CustomerIdentity, account_id: Optional[str]) -> dict[str, Any]:
    record: dict[str, Any] = {
        "FirstName": identity.first_name,
        "LastName": identity.last_name or "Unknown",
        "Email": identity.email,
        "Phone": identity.phone,
        "MailingStreet": identity.address_1,
        "MailingCity": identity.city,
        "MailingState": identity.state,
        "MailingPostalCode": identity.zip,
        "MailingCountry": identity.country,
    }
    if account_id:
        record["AccountId"] = account_id
    return record


def order_record(
    order: dict[str, Any],
    account_id: str,
    fields: CustomFields,
    include_payment: bool = False,
) -> dict[str, Any]:
    """Map a storefront order to a CRM Order."""
    billing = order.get("billing_address") or {}
    shipping_addresses = order.get("shipping_addresses")
    shipping = shipping_addresses[0] if isinstance(shipping_addresses, list) and shipping_addresses else {}

    record: dict[str, Any] = {
        "AccountId": account_id,
        "Status": crm_order_status(order.get("status")),
        "EffectiveDate": parse_storefront_date(order.get("date_created")).isoformat(),
        "OrderNumber": str(order["id"]),
        "TotalAmount": to_amount(order.get("total_inc_tax")),
        "BillingStreet": billing.get("street_1"),
        "BillingCity": billing.get("city"),
        "BillingState": billing.get("state"),
        "BillingPostalCode": billing.get("zip"),
        "BillingCountry": billing.get("country"),
        "ShippingStreet": shipping.get("street_1"),
        "ShippingCity": shipping.get("city"),
        "ShippingState": shipping.get("state"),
        "ShippingPostalCode": shipping.get("zip"),
        "ShippingCountry": shipping.get("country"),
        "Description": (
            f"Order from BigCommerce\nPayment Method: {order.get('payment_method')}\n"
            f"Status: {order.get('status')}"
        ),
    }

    custom = fields.order
    _put(record, custom.storefront_order_id, str(order["id"]))
    _put(record, custom.subtotal, to_amount(order.get("subtotal_inc_tax")))
    _put(record, custom.tax_total, to_amount(order.get("total_tax")))
    _put(record, custom.shipping_total, to_amount(order.get("shipping_cost_inc_tax")))
    _put(record, custom.storefront_status, order.get("status"))

    if include_payment:
        _put(record, custom.payment_method, order.get("payment_method"))
        if order.get("payment_provider_id"):
            _put(record, custom.transaction_id, order["payment_provider_id"])

    return record


def order_item_records(order_id: str, products: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "OrderId": order_id,
            "Quantity": product.get("quantity"),
            "UnitPrice": to_amount(product.get("base_price")),
            "Description": product.get("name"),
        }
        for product in products
    ]


def lead_record(
    cart: dict[str, Any],
    identity: CustomerIdentity,
    value: float,
    fields: CustomFields,
    abandoned_at: datetime,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "FirstName": identity.first_name,
        "LastName": identity.last_name,
        "Email": identity.email,
        "Company": identity.company or identity.display_name,
        "LeadSource": LEAD_SOURCE,
        "Status": OPEN_LEAD_STATUS,
        "Description": cart_description(cart, abandoned_at),
    }
    custom = fields.lead
    _put(record, custom.cart_value, value)
    _put(record, custom.cart_id, cart.get("id"))
    _put(record, custom.abandoned_date, abandoned_at.isoformat())
    return record


def opportunity_record(
    cart: dict[str, Any],
    account_id: str,
    value: float,
    fields: CustomFields,
    abandoned_at: datetime,
    expiration_days: int,
) -> dict[str, Any]:
    close_date = abandoned_at.date() + timedelta(days=expiration_days)
    record: dict[str, Any] = {
        "Name": f"Abandoned Cart - {cart.get('id')}",
        "AccountId": account_id,
        "StageName": OPPORTUNITY_OPEN_STAGE,
        "Amount": value,
        "CloseDate": close_date.isoformat(),
        "LeadSource": LEAD_SOURCE,
        "Description": cart_description(cart, abandoned_at),
    }
    custom = fields.opportunity
    _put(record, custom.cart_id, cart.get("id"))
    _put(record, custom.cart_value, value)
    _put(record, custom.abandoned_date, abandoned_at.isoformat())
    return record


def recovery_task_record(
    record_type: RecordType,
    record_id: str,
    value: float,
    high_priority_value: float,
    today: date,
) -> dict[str, Any]:
    """Follow-up Task due tomorrow, linked to the Opportunity or Lead."""
    record: dict[str, Any] = {
        "Subject": "Follow up on abandoned cart",
        "Status": "Not Started",
        "Priority": "High" if value > high_priority_value else "Normal",
        "ActivityDate": (today + timedelta(days=1)).isoformat(),
        "Description": f"Follow up with customer regarding abandoned cart worth ${value:.2f}",
    }
    if record_type == RecordType.OPPORTUNITY:
        record["WhatId"] = record_id
    else:
        record["WhoId"] = record_id
    return record
