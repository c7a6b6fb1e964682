"""Inbound storefront webhook endpoints.

Every signed route verifies the HMAC signature against the raw body before
parsing it, so a bad signature never reaches the pipeline. Responses:
- 401: missing or invalid signature
- 400: non-JSON body, or missing ``scope`` / ``data``
- 200: skipped or successful sync
- 500: failed sync
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.relay.api.deps import get_cart_recovery, get_order_sync
from src.relay.config import Environment, Settings, get_settings
from src.relay.core.monitoring import webhook_rejections_total
from src.relay.core.security import SIGNATURE_HEADER, verify_signature
from src.relay.sync.carts import CartRecoveryOrchestrator
from src.relay.sync.orders import OrderSyncOrchestrator
from src.relay.sync.schemas import InboundEvent, SyncOutcome, SyncStatus

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _reject(status_code: int, reason: str, error: str) -> JSONResponse:
    webhook_rejections_total.labels(reason=reason).inc()
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _parse_event(body: bytes) -> InboundEvent | JSONResponse:
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("webhook.invalid_json")
        return _reject(status.HTTP_400_BAD_REQUEST, "invalid_json", "Invalid JSON payload")

    if not isinstance(payload, dict) or not payload.get("scope") or not isinstance(
        payload.get("data"), dict
    ):
        logger.warning("webhook.invalid_payload")
        return _reject(
            status.HTTP_400_BAD_REQUEST,
            "invalid_payload",
            "Invalid webhook payload: missing scope or data",
        )

    if payload["data"].get("id") in (None, ""):
        logger.warning("webhook.missing_resource_id", scope=payload["scope"])
        return _reject(
            status.HTTP_400_BAD_REQUEST, "missing_id", "Invalid webhook payload: missing data.id"
        )

    return InboundEvent(scope=payload["scope"], payload=payload["data"])


async def _verified_event(request: Request, settings: Settings) -> InboundEvent | JSONResponse:
    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), settings.WEBHOOK_SECRET):
        return _reject(status.HTTP_401_UNAUTHORIZED, "signature", "Invalid webhook signature")
    return _parse_event(body)


def _order_response(outcome: SyncOutcome) -> JSONResponse:
    content: dict[str, Any] = {
        "success": outcome.succeeded,
        "message": outcome.message,
        "order_id": outcome.source_id,
    }
    if outcome.status == SyncStatus.FAILED:
        content.update(error=outcome.message, message=outcome.error)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)
    if outcome.status == SyncStatus.SKIPPED:
        content["status"] = outcome.related_ids.get("status")
    else:
        content["crm_order_id"] = outcome.record_id
    return JSONResponse(status_code=status.HTTP_200_OK, content=content)


def _cart_response(outcome: SyncOutcome) -> JSONResponse:
    content: dict[str, Any] = {
        "success": outcome.succeeded,
        "message": outcome.message,
        "cart_id": outcome.source_id,
    }
    if outcome.status == SyncStatus.FAILED:
        content.update(error=outcome.message, message=outcome.error)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)
    content.update(
        type=outcome.record_type.value if outcome.record_type else None,
        crm_id=outcome.record_id,
        cart_value=outcome.monetary_value,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=content)


@router.post("/orders")
async def order_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    order_sync: OrderSyncOrchestrator = Depends(get_order_sync),
) -> JSONResponse:
    """Order created/updated webhook."""
    event = await _verified_event(request, settings)
    if isinstance(event, JSONResponse):
        return event
    return _order_response(await order_sync.sync(event))


@router.post("/carts/abandoned")
async def abandoned_cart_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    cart_recovery: CartRecoveryOrchestrator = Depends(get_cart_recovery),
) -> JSONResponse:
    """Abandoned cart webhook."""
    event = await _verified_event(request, settings)
    if isinstance(event, JSONResponse):
        return event
    return _cart_response(await cart_recovery.sync(event))


@router.post("/general")
async def general_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Signed catch-all: logged and acknowledged, not synced."""
    event = await _verified_event(request, settings)
    if isinstance(event, JSONResponse):
        return event
    logger.info("webhook.received", scope=event.scope, resource_id=event.resource_id)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"success": True, "message": "Webhook received", "scope": event.scope},
    )


@router.post("/test")
async def test_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    order_sync: OrderSyncOrchestrator = Depends(get_order_sync),
    cart_recovery: CartRecoveryOrchestrator = Depends(get_cart_recovery),
) -> JSONResponse:
    """Unsigned webhook for local development, routed by scope."""
    if settings.ENVIRONMENT != Environment.development:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    event = _parse_event(await request.body())
    if isinstance(event, JSONResponse):
        return event
    logger.info("webhook.test_received", scope=event.scope)

    if event.scope.startswith("store/order/"):
        return _order_response(await order_sync.sync(event))
    if event.scope.startswith("store/cart/abandoned"):
        return _cart_response(await cart_recovery.sync(event))
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"success": True, "message": "Webhook received", "scope": event.scope},
    )
