"""Health check endpoint.

Reports process liveness and whether the CRM session is currently
authenticated. No external calls are made.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from src.relay.api.deps import get_crm
from src.relay.clients.crm import CRMClient
from src.relay.config import Settings, get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    crm: CRMClient | None = Depends(get_crm),
    settings: Settings = Depends(get_settings),
):
    """Liveness plus CRM session state."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.ENVIRONMENT.value,
        "crm_connected": bool(crm is not None and crm.is_authenticated),
    }
