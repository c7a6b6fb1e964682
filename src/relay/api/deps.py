"""FastAPI dependencies resolving pipeline components from app.state.

Components are built once in the application lifespan and stored on
``app.state``; a missing component means startup did not finish, reported as
503. Operator routes are guarded by ``require_admin``.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.relay.audit.service import AuditLog
from src.relay.clients.crm import CRMClient
from src.relay.config import Environment, Settings, get_settings
from src.relay.core.security import API_KEY_HEADER, api_key_matches
from src.relay.sync.carts import CartRecoveryOrchestrator
from src.relay.sync.orders import OrderSyncOrchestrator


def _from_state(request: Request, name: str, label: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return component


def get_order_sync(request: Request) -> OrderSyncOrchestrator:
    return _from_state(request, "order_sync", "Order sync")


def get_cart_recovery(request: Request) -> CartRecoveryOrchestrator:
    return _from_state(request, "cart_recovery", "Cart recovery")


def get_audit_log(request: Request) -> AuditLog:
    return _from_state(request, "audit_log", "Audit log")


def get_crm(request: Request) -> CRMClient | None:
    """CRM client or None; health reporting tolerates its absence."""
    return getattr(request.app.state, "crm", None)


async def require_admin(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard operator endpoints with the shared admin API key.

    Accepts the key in ``X-API-Key`` or as an ``Authorization: Bearer`` token.
    With no key configured, the endpoints are open in development and
    disabled everywhere else.

    Raises:
        HTTPException(401): A key is configured and the request does not carry it.
        HTTPException(403): No key is configured outside development.
    """
    if not settings.ADMIN_API_KEY:
        if settings.ENVIRONMENT == Environment.development:
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator endpoints are disabled: ADMIN_API_KEY is not set",
        )

    presented = request.headers.get(API_KEY_HEADER)
    auth_header = request.headers.get("Authorization")
    if not presented and auth_header and auth_header.startswith("Bearer "):
        presented = auth_header[7:]

    if not api_key_matches(presented, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
