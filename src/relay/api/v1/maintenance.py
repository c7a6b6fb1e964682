"""On-demand maintenance operations."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.relay.api.deps import get_cart_recovery, require_admin
from src.relay.sync.carts import CartRecoveryOrchestrator
from src.relay.sync.schemas import ExpirationResult

router = APIRouter(
    prefix="/maintenance", tags=["maintenance"], dependencies=[Depends(require_admin)]
)


@router.post("/expire-opportunities", response_model=ExpirationResult)
async def expire_opportunities(
    cart_recovery: CartRecoveryOrchestrator = Depends(get_cart_recovery),
) -> ExpirationResult:
    """Run the abandoned-cart opportunity expiration sweep now."""
    return await cart_recovery.expire_old_opportunities()
