"""Async HTTP client for the BigCommerce storefront API.

Each method is a single request/response; HTTP errors propagate as
``httpx.HTTPStatusError`` so the caller's retry policy decides what to do.
The one exception is webhook registration, where a 422 means the hook is
already registered and is reported as a warning.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)


class StorefrontClient:
    """Async client for the BigCommerce v2/v3 REST API.

    Args:
        store_hash: Store identifier used in every path.
        access_token: API account token sent as ``X-Auth-Token``.
        api_url: API host (default: https://api.bigcommerce.com).
        transport: Optional httpx transport (tests use MockTransport).
    """

    TIMEOUT_READ = 10.0
    TIMEOUT_MUTATE = 30.0

    def __init__(
        self,
        store_hash: str,
        access_token: str,
        api_url: str = "https://api.bigcommerce.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = f"{api_url.rstrip('/')}/stores/{store_hash}"
        self._headers = {
            "X-Auth-Token": access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
            transport=self._transport,
        )

    async def _get(self, path: str, **params: Any) -> Any:
        async with self._client(self.TIMEOUT_READ) as client:
            response = await client.get(f"{self._base_url}{path}", params=params or None)
            response.raise_for_status()
            return response.json()

    # ── Orders ─────────────────────────────────────────────────────────

    async def get_order(self, order_id: int | str) -> dict[str, Any]:
        """GET /v2/orders/{id}."""
        order = await self._get(f"/v2/orders/{order_id}")
        logger.info("storefront.order_fetched", order_id=order_id, status=order.get("status"))
        return order

    async def get_order_products(self, order_id: int | str) -> list[dict[str, Any]]:
        """GET /v2/orders/{id}/products (line items)."""
        products = await self._get(f"/v2/orders/{order_id}/products")
        logger.info("storefront.order_products_fetched", order_id=order_id, count=len(products))
        return products

    async def get_order_shipping_addresses(self, order_id: int | str) -> list[dict[str, Any]]:
        """GET /v2/orders/{id}/shipping_addresses."""
        return await self._get(f"/v2/orders/{order_id}/shipping_addresses")

    # ── Carts and customers ────────────────────────────────────────────

    async def get_cart(self, cart_id: str) -> dict[str, Any]:
        """GET /v3/carts/{id}, unwrapped from the ``data`` envelope."""
        payload = await self._get(f"/v3/carts/{cart_id}")
        logger.info("storefront.cart_fetched", cart_id=cart_id)
        return payload["data"]

    async def get_customer(self, customer_id: int | str) -> dict[str, Any] | None:
        """Look up a single customer through the ``id:in`` filter.

        Returns:
            The customer record, or None when no customer has that ID.
        """
        payload = await self._get("/v3/customers", **{"id:in": str(customer_id)})
        customers = payload.get("data") or []
        if not customers:
            logger.info("storefront.customer_not_found", customer_id=customer_id)
            return None
        return customers[0]

    # ── Webhooks ───────────────────────────────────────────────────────

    async def register_webhook(self, scope: str, destination: str) -> dict[str, Any] | None:
        """Register a webhook for ``scope`` delivering to ``destination``.

        Returns:
            The created hook, or None when the hook already exists (422).
        """
        async with self._client(self.TIMEOUT_MUTATE) as client:
            response = await client.post(
                f"{self._base_url}/v3/hooks",
                json={"scope": scope, "destination": destination, "is_active": True},
            )
        if response.status_code == 422:
            logger.warning("storefront.webhook_exists", scope=scope, destination=destination)
            return None
        response.raise_for_status()
        hook = response.json()["data"]
        logger.info("storefront.webhook_registered", scope=scope, webhook_id=hook.get("id"))
        return hook

    async def list_webhooks(self) -> list[dict[str, Any]]:
        payload = await self._get("/v3/hooks")
        return payload.get("data", [])

    async def delete_webhook(self, webhook_id: int | str) -> None:
        async with self._client(self.TIMEOUT_MUTATE) as client:
            response = await client.delete(f"{self._base_url}/v3/hooks/{webhook_id}")
            response.raise_for_status()
        logger.info("storefront.webhook_deleted", webhook_id=webhook_id)
