"""REST API endpoints for risks raised against opportunities.

A risk references its opportunity by business opportunity_id. The
opportunity must exist in the local store when the risk is created or
re-pointed; its name is copied onto the risk at that moment.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from src.app.api.deps import dump, get_opportunity_repository, get_risk_repository
from src.app.core.errors import NotFoundError, RecordValidationError
from src.app.opportunities.repository import total_pages
from src.app.opportunities.schemas import (
    Level,
    OpportunityRead,
    RiskCreate,
    RiskFilter,
    RiskStatus,
    RiskUpdate,
)

router = APIRouter(prefix="/risks", tags=["risks"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class RisksByOpportunityRequest(BaseModel):
    """Request body for listing the risks of one opportunity."""

    opportunity_id: str | None = None


class RiskForOpportunityRequest(BaseModel):
    """Request body for raising a new (Open) risk against an opportunity."""

    model_config = ConfigDict(str_strip_whitespace=True)

    opportunity_id: str | None = None
    title: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    impact: Level
    probability: Level
    owner: str | None = Field(default=None, max_length=100)
    mitigation: str | None = Field(default=None, max_length=1000)
    due_date: date | None = None


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _require_opportunity(request: Request, opportunity_id: str) -> OpportunityRead:
    """Resolve a business opportunity id in the local store, 400 if unknown."""
    repo = get_opportunity_repository(request)
    opportunity = await repo.find_one(opportunity_id=opportunity_id)
    if opportunity is None:
        raise RecordValidationError(f"Opportunity with ID '{opportunity_id}' not found")
    return opportunity


def _level_options(suffix: str) -> list[dict[str, Any]]:
    return [{"code": level.value, "text": f"{level.value} {suffix}"} for level in Level]


# ── Lookups ──────────────────────────────────────────────────────────────────


@router.get("/value-help")
async def get_value_help() -> dict:
    """Static lookups for the risk form."""
    return {
        "status": "success",
        "data": {
            "impact_levels": _level_options("Impact"),
            "probability_levels": _level_options("Probability"),
            "status_types": [{"code": s.value, "text": s.value} for s in RiskStatus],
        },
    }


@router.get("/stats")
async def get_risk_stats(request: Request, opportunity_id: str | None = None) -> dict:
    """Risk counts by status and high impact/probability."""
    repo = get_risk_repository(request)
    stats = await repo.stats(opportunity_id)
    return {"status": "success", "data": dump(stats)}


@router.post("/by-opportunity")
async def get_risks_by_opportunity(body: RisksByOpportunityRequest, request: Request) -> dict:
    if not body.opportunity_id:
        raise RecordValidationError("opportunity_id is required")

    repo = get_risk_repository(request)
    risks = await repo.list_by_opportunity(body.opportunity_id)
    return {
        "status": "success",
        "data": {
            "opportunity_id": body.opportunity_id,
            "risks": [dump(r) for r in risks],
            "count": len(risks),
        },
    }


@router.post("/for-opportunity", status_code=201)
async def create_risk_for_opportunity(
    body: RiskForOpportunityRequest, request: Request
) -> dict:
    """Raise an Open risk against an opportunity and echo the opportunity summary."""
    if not body.opportunity_id:
        raise RecordValidationError("opportunity_id is required")

    opportunity = await _require_opportunity(request, body.opportunity_id)
    data = RiskCreate(
        **body.model_dump(exclude={"opportunity_id"}),
        opportunity_id=opportunity.opportunity_id,
        status=RiskStatus.OPEN,
    )

    repo = get_risk_repository(request)
    risk = await repo.insert(data, opportunity_name=opportunity.name)
    return {
        "status": "success",
        "data": {
            "risk": dump(risk),
            "opportunity": {
                "id": opportunity.id,
                "opportunity_id": opportunity.opportunity_id,
                "name": opportunity.name,
            },
        },
    }


# ── CRUD ─────────────────────────────────────────────────────────────────────


@router.get("")
async def list_risks(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: str = Query("-created_at"),
    opportunity_id: str | None = None,
    status: RiskStatus | None = None,
    impact: Level | None = None,
    probability: Level | None = None,
    search: str | None = None,
) -> dict:
    repo = get_risk_repository(request)
    filters = RiskFilter(
        opportunity_id=opportunity_id,
        status=status,
        impact=impact,
        probability=probability,
        search=search,
    )
    risks, total = await repo.list_risks(filters, page=page, limit=limit, sort=sort)
    return {
        "status": "success",
        "data": {
            "risks": [dump(r) for r in risks],
            "total_pages": total_pages(total, limit),
            "current_page": page,
            "total": total,
        },
    }


@router.get("/{id}")
async def get_risk(id: str, request: Request) -> dict:
    repo = get_risk_repository(request)
    risk = await repo.get(id)
    if risk is None:
        raise NotFoundError("Risk not found")
    return {"status": "success", "data": {"risk": dump(risk)}}


@router.post("", status_code=201)
async def create_risk(body: RiskCreate, request: Request) -> dict:
    opportunity = await _require_opportunity(request, body.opportunity_id)
    repo = get_risk_repository(request)
    risk = await repo.insert(body, opportunity_name=opportunity.name)
    return {"status": "success", "data": {"risk": dump(risk)}}


@router.api_route("/{id}", methods=["PUT", "PATCH"])
async def update_risk(id: str, body: RiskUpdate, request: Request) -> dict:
    """Partial update; re-pointing to another opportunity refreshes the name snapshot."""
    opportunity_name = None
    if body.opportunity_id:
        opportunity = await _require_opportunity(request, body.opportunity_id)
        opportunity_name = opportunity.name

    repo = get_risk_repository(request)
    risk = await repo.update(id, body, opportunity_name=opportunity_name)
    if risk is None:
        raise NotFoundError("Risk not found")
    return {"status": "success", "data": {"risk": dump(risk)}}


@router.delete("/{id}")
async def delete_risk(id: str, request: Request) -> dict:
    repo = get_risk_repository(request)
    if not await repo.delete(id):
        raise NotFoundError("Risk not found")
    return {"status": "success", "message": "Risk deleted successfully"}
