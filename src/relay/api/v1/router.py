"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.relay.api.v1 import audit, health, maintenance, webhooks

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(webhooks.router)
router.include_router(audit.router)
router.include_router(maintenance.router)
