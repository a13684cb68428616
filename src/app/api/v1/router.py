"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import competitors, health, opportunities, risks

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(opportunities.router)
router.include_router(risks.router)
router.include_router(competitors.router)
