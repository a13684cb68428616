"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Liveness
only proves the process is serving; readiness also checks the database.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine

router = APIRouter(tags=["health"])


def liveness_payload() -> dict:
    """Body shared by the root route and /health."""
    settings = get_settings()
    return {
        "status": "success",
        "message": "Opportunity Hub API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT.value,
    }


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    return liveness_payload()


async def _check_dependencies() -> dict:
    """Check database connectivity. Returns check results dict."""
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 when the database answers, 503 otherwise."""
    checks = await _check_dependencies()
    all_healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
