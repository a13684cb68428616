"""Accessors for the collaborators the lifespan stores on ``app.state``.

Route handlers call these instead of reaching into app.state directly, so
a component that failed to initialize answers 503 rather than 500.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status


def _from_state(request: Request, name: str, label: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return component


def get_opportunity_repository(request: Request) -> Any:
    """Retrieve OpportunityRepository from app.state, 503 if not available."""
    return _from_state(request, "opportunity_repository", "Opportunity store")


def get_risk_repository(request: Request) -> Any:
    """Retrieve RiskRepository from app.state, 503 if not available."""
    return _from_state(request, "risk_repository", "Risk store")


def get_competitor_repository(request: Request) -> Any:
    """Retrieve CompetitorRepository from app.state, 503 if not available."""
    return _from_state(request, "competitor_repository", "Competitor store")


def get_sync_service(request: Request) -> Any:
    """Retrieve OpportunitySyncService from app.state, 503 if not available."""
    return _from_state(request, "sync_service", "SAP CRM sync")


def dump(model: Any) -> dict[str, Any]:
    """JSON-ready dict of a Pydantic model (dates as ISO strings, enums by value)."""
    return model.model_dump(mode="json")
