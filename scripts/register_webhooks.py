#!/usr/bin/env python3
"""CLI script to manage storefront webhook registrations.

Usage:
    python scripts/register_webhooks.py list
    python scripts/register_webhooks.py register orders --base-url https://relay.example.com
    python scripts/register_webhooks.py register carts --base-url https://relay.example.com
    python scripts/register_webhooks.py delete 12345

Reads BIGCOMMERCE_STORE_HASH / BIGCOMMERCE_ACCESS_TOKEN from the environment
or the project's .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.relay
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

# Webhook kind → (storefront scope, relay path)
WEBHOOKS: dict[str, tuple[str, str]] = {
    "orders": ("store/order/statusUpdated", "/api/v1/webhooks/orders"),
    "orders-created": ("store/order/created", "/api/v1/webhooks/orders"),
    "carts": ("store/cart/abandoned", "/api/v1/webhooks/carts/abandoned"),
}


def _client():
    from src.relay.clients.storefront import StorefrontClient
    from src.relay.config import get_settings

    settings = get_settings()
    missing = [
        name
        for name in ("BIGCOMMERCE_STORE_HASH", "BIGCOMMERCE_ACCESS_TOKEN")
        if not getattr(settings, name)
    ]
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}")
        sys.exit(1)
    return StorefrontClient(
        store_hash=settings.BIGCOMMERCE_STORE_HASH,
        access_token=settings.BIGCOMMERCE_ACCESS_TOKEN,
        api_url=settings.BIGCOMMERCE_API_URL,
    )


async def list_hooks() -> None:
    hooks = await _client().list_webhooks()
    if not hooks:
        print("No webhooks found.")
        return
    print(f"Found {len(hooks)} webhook(s):")
    for hook in hooks:
        print(f"  ID: {hook.get('id')}")
        print(f"    Scope:       {hook.get('scope')}")
        print(f"    Destination: {hook.get('destination')}")
        print(f"    Active:      {hook.get('is_active')}")


async def register(kind: str, base_url: str) -> None:
    scope, path = WEBHOOKS[kind]
    destination = base_url.rstrip("/") + path
    hook = await _client().register_webhook(scope, destination)
    if hook is None:
        print(f"Webhook already exists for {scope} -> {destination}")
        return
    print("Webhook registered:")
    print(f"  ID:          {hook.get('id')}")
    print(f"  Scope:       {hook.get('scope')}")
    print(f"  Destination: {hook.get('destination')}")


async def delete(webhook_id: str) -> None:
    await _client().delete_webhook(webhook_id)
    print(f"Webhook {webhook_id} deleted")


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage storefront webhook registrations")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List registered webhooks")

    reg = sub.add_parser("register", help="Register a webhook")
    reg.add_argument("kind", choices=sorted(WEBHOOKS), help="Which webhook to register")
    reg.add_argument("--base-url", required=True, help="Public base URL of this service")

    rm = sub.add_parser("delete", help="Delete a webhook by ID")
    rm.add_argument("webhook_id", help="Webhook ID to delete")

    args = parser.parse_args()

    if args.command == "list":
        asyncio.run(list_hooks())
    elif args.command == "register":
        asyncio.run(register(args.kind, args.base_url))
    else:
        asyncio.run(delete(args.webhook_id))


if __name__ == "__main__":
    main()
