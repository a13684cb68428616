"""REST API endpoints for competitors tracked against opportunities."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request

from src.app.api.deps import dump, get_competitor_repository, get_opportunity_repository
from src.app.core.errors import NotFoundError, RecordValidationError
from src.app.opportunities.repository import total_pages
from src.app.opportunities.schemas import (
    CompetitorCreate,
    CompetitorFilter,
    CompetitorStatus,
    CompetitorUpdate,
    Level,
)

router = APIRouter(prefix="/competitors", tags=["competitors"])


@router.get("")
async def list_competitors(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: str = Query("-created_at"),
    threat_level: Level | None = None,
    status: CompetitorStatus | None = None,
    opportunity_id: str | None = None,
) -> dict:
    repo = get_competitor_repository(request)
    filters = CompetitorFilter(
        threat_level=threat_level,
        status=status,
        opportunity_id=opportunity_id,
    )
    competitors, total = await repo.list_competitors(
        filters, page=page, limit=limit, sort=sort
    )
    return {
        "status": "success",
        "data": {
            "competitors": [dump(c) for c in competitors],
            "total_pages": total_pages(total, limit),
            "current_page": page,
            "total": total,
        },
    }


@router.get("/opportunity/{opportunity_id}")
async def get_competitors_by_opportunity(opportunity_id: str, request: Request) -> dict:
    repo = get_competitor_repository(request)
    competitors = await repo.list_by_opportunity(opportunity_id)
    return {
        "status": "success",
        "data": {
            "competitors": [dump(c) for c in competitors],
            "count": len(competitors),
        },
    }


@router.delete("/opportunity/{opportunity_id}")
async def delete_competitors_by_opportunity(opportunity_id: str, request: Request) -> dict:
    repo = get_competitor_repository(request)
    deleted = await repo.delete_by_opportunity(opportunity_id)
    return {
        "status": "success",
        "message": f"Deleted {deleted} competitors",
        "deleted_count": deleted,
    }


@router.get("/{id}")
async def get_competitor(id: str, request: Request) -> dict:
    repo = get_competitor_repository(request)
    competitor = await repo.get(id)
    if competitor is None:
        raise NotFoundError("Competitor not found")
    return {"status": "success", "data": {"competitor": dump(competitor)}}


@router.post("", status_code=201)
async def create_competitor(body: CompetitorCreate, request: Request) -> dict:
    """Create a competitor.

    opportunity_id may be the opportunity's primary key, external object id,
    or business id; the business id and name are stored on the competitor.
    """
    opportunity_repo = get_opportunity_repository(request)
    opportunity = await opportunity_repo.get(body.opportunity_id)
    if opportunity is None:
        opportunity = await opportunity_repo.find_one(
            external_object_id=body.opportunity_id,
            opportunity_id=body.opportunity_id,
        )
    if opportunity is None:
        raise RecordValidationError("Opportunity not found")

    data = body.model_copy(update={"opportunity_id": opportunity.opportunity_id})
    repo = get_competitor_repository(request)
    competitor = await repo.insert(data, opportunity_name=opportunity.name)
    return {"status": "success", "data": {"competitor": dump(competitor)}}


@router.api_route("/{id}", methods=["PUT", "PATCH"])
async def update_competitor(id: str, body: CompetitorUpdate, request: Request) -> dict:
    repo = get_competitor_repository(request)
    competitor = await repo.update(id, body)
    if competitor is None:
        raise NotFoundError("Competitor not found")
    return {"status": "success", "data": {"competitor": dump(competitor)}}


@router.delete("/{id}")
async def delete_competitor(id: str, request: Request) -> dict:
    repo = get_competitor_repository(request)
    if not await repo.delete(id):
        raise NotFoundError("Competitor not found")
    return {"status": "success", "message": "Competitor deleted successfully"}
