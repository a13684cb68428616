"""REST API endpoints for opportunities and their SAP CRM sync.

Every id-based read goes through OpportunitySyncService.get_or_sync, so an
opportunity the store has never seen is pulled from SAP CRM on first access.
Responses use the ``{"status": "success", "data": ...}`` envelope; errors are
rendered by the handlers in src/app/api/errors.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse

from src.app.api.deps import (
    dump,
    get_competitor_repository,
    get_opportunity_repository,
    get_risk_repository,
    get_sync_service,
)
from src.app.core.errors import NotFoundError
from src.app.opportunities.repository import total_pages
from src.app.opportunities.schemas import (
    OpportunityCreate,
    OpportunityFilter,
    OpportunitySource,
    OpportunityUpdate,
    SalesStage,
)

router = APIRouter(prefix="/opportunities", tags=["opportunities"])

CURRENCIES = (
    ("USD", "US Dollar"),
    ("EUR", "Euro"),
    ("GBP", "British Pound"),
    ("ILS", "Israeli Shekel"),
)

SOURCE_LABELS = {
    OpportunitySource.MANUAL: "Manual Entry",
    OpportunitySource.SAP_CRM: "SAP CRM",
}


# ── Lookups ──────────────────────────────────────────────────────────────────


@router.get("")
async def list_opportunities(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: str = Query("-created_at"),
    sales_stage: SalesStage | None = None,
    source: OpportunitySource | None = None,
    search: str | None = None,
) -> dict:
    """Paginated opportunity list with stage/source/search filters."""
    repo = get_opportunity_repository(request)
    filters = OpportunityFilter(sales_stage=sales_stage, source=source, search=search)
    opportunities, total = await repo.list_opportunities(
        filters, page=page, limit=limit, sort=sort
    )
    return {
        "status": "success",
        "data": {
            "opportunities": [dump(o) for o in opportunities],
            "total_pages": total_pages(total, limit),
            "current_page": page,
            "total": total,
        },
    }


@router.get("/value-help")
async def get_value_help() -> dict:
    """Static lookups for the opportunity form."""
    return {
        "status": "success",
        "data": {
            "sales_stages": [{"code": s.value, "text": s.value} for s in SalesStage],
            "currencies": [{"code": code, "text": text} for code, text in CURRENCIES],
            "sources": [
                {"code": s.value, "text": SOURCE_LABELS[s]} for s in OpportunitySource
            ],
        },
    }


# ── SAP CRM ──────────────────────────────────────────────────────────────────


@router.get("/crm/test")
async def test_crm_connection(request: Request) -> JSONResponse:
    """Probe SAP CRM; 200 when reachable, 502 otherwise."""
    sync_service = get_sync_service(request)
    result = await sync_service.test_connection()
    if result.success:
        return JSONResponse(
            content={
                "status": "success",
                "message": "SAP CRM connection successful",
                "data": dump(result),
            },
        )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "status": "error",
            "message": "SAP CRM connection failed",
            "data": dump(result),
        },
    )


@router.get("/crm/fetch")
async def fetch_from_crm(
    request: Request,
    top: int = Query(30, ge=1),
    skip: int = Query(0, ge=0),
) -> dict:
    """One page of SAP CRM opportunities, normalized but not stored."""
    sync_service = get_sync_service(request)
    opportunities = await sync_service.fetch_page(top=top, skip=skip)
    return {
        "status": "success",
        "message": f"Fetched {len(opportunities)} opportunities from SAP CRM",
        "data": {
            "opportunities": [dump(o) for o in opportunities],
            "count": len(opportunities),
            "source": OpportunitySource.SAP_CRM.value,
        },
    }


@router.get("/crm/fetch/{id}")
async def fetch_opportunity_from_crm(id: str, request: Request) -> dict:
    """One SAP CRM opportunity, normalized but not stored."""
    sync_service = get_sync_service(request)
    opportunity = await sync_service.fetch_raw(id)
    if opportunity is None:
        raise NotFoundError(f"Opportunity {id} not found in SAP CRM")
    return {
        "status": "success",
        "data": {
            "opportunity": dump(opportunity),
            "source": OpportunitySource.SAP_CRM.value,
        },
    }


async def _sync(
    request: Request,
    top: int,
    skip: int,
) -> dict:
    sync_service = get_sync_service(request)
    report = await sync_service.sync_all(top=top, skip=skip)
    return {
        "status": "success",
        "message": "SAP CRM sync completed",
        "data": {
            "fetched": report.fetched,
            "created": report.created,
            "updated": report.updated,
            "errors": len(report.errors),
            "error_details": [dump(e) for e in report.errors],
            "source": OpportunitySource.SAP_CRM.value,
        },
    }


@router.post("/crm/sync")
async def sync_from_crm(
    request: Request,
    top: int = Query(100, ge=1),
    skip: int = Query(0, ge=0),
) -> dict:
    """Pull one page from SAP CRM and upsert it into the store."""
    return await _sync(request, top, skip)


@router.post("/refresh")
async def refresh_from_crm(
    request: Request,
    top: int = Query(100, ge=1),
    skip: int = Query(0, ge=0),
) -> dict:
    """Alias of /crm/sync."""
    return await _sync(request, top, skip)


# ── CRUD ─────────────────────────────────────────────────────────────────────


@router.post("", status_code=201)
async def create_opportunity(body: OpportunityCreate, request: Request) -> dict:
    """Create a manually entered opportunity."""
    repo = get_opportunity_repository(request)
    data = body.model_copy(update={"source": OpportunitySource.MANUAL})
    opportunity = await repo.insert(data)
    return {"status": "success", "data": {"opportunity": dump(opportunity)}}


@router.get("/{id}")
async def get_opportunity(id: str, request: Request) -> dict:
    """Get an opportunity by any id, syncing it from SAP CRM when unknown locally."""
    sync_service = get_sync_service(request)
    opportunity = await sync_service.get_or_sync(id)
    return {"status": "success", "data": {"opportunity": dump(opportunity)}}


@router.get("/{id}/risks")
async def get_opportunity_risks(id: str, request: Request) -> dict:
    sync_service = get_sync_service(request)
    risk_repo = get_risk_repository(request)

    opportunity = await sync_service.get_or_sync(id)
    risks = await risk_repo.list_by_opportunity(opportunity.opportunity_id)
    return {
        "status": "success",
        "data": {
            "opportunity": dump(opportunity),
            "risks": [dump(r) for r in risks],
            "risk_count": len(risks),
        },
    }


@router.get("/{id}/competitors")
async def get_opportunity_competitors(id: str, request: Request) -> dict:
    sync_service = get_sync_service(request)
    competitor_repo = get_competitor_repository(request)

    opportunity = await sync_service.get_or_sync(id)
    competitors = await competitor_repo.list_by_opportunity(opportunity.opportunity_id)
    return {
        "status": "success",
        "data": {
            "opportunity": dump(opportunity),
            "competitors": [dump(c) for c in competitors],
            "competitor_count": len(competitors),
        },
    }


@router.api_route("/{id}", methods=["PUT", "PATCH"])
async def update_opportunity(id: str, body: OpportunityUpdate, request: Request) -> dict:
    """Partial update by primary key; only fields present in the body are written."""
    repo = get_opportunity_repository(request)
    opportunity = await repo.update(id, body)
    if opportunity is None:
        raise NotFoundError("Opportunity not found")
    return {"status": "success", "data": {"opportunity": dump(opportunity)}}


@router.delete("/{id}")
async def delete_opportunity(
    id: str,
    request: Request,
    cascade: bool = False,
) -> JSONResponse:
    """Delete by primary key.

    Refused while risks or competitors reference the opportunity, unless
    ``cascade=true``, in which case they are deleted too.
    """
    repo = get_opportunity_repository(request)
    risk_repo = get_risk_repository(request)
    competitor_repo = get_competitor_repository(request)

    opportunity = await repo.get(id)
    if opportunity is None:
        raise NotFoundError("Opportunity not found")

    risk_count = await risk_repo.count_by_opportunity(opportunity.opportunity_id)
    competitor_count = await competitor_repo.count_by_opportunity(opportunity.opportunity_id)

    if (risk_count or competitor_count) and not cascade:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "status": "error",
                "message": (
                    f"Cannot delete opportunity with {risk_count} associated risks and "
                    f"{competitor_count} associated competitors. "
                    "Use ?cascade=true to delete them as well."
                ),
            },
        )

    risks_deleted = competitors_deleted = 0
    if cascade:
        risks_deleted = await risk_repo.delete_by_opportunity(opportunity.opportunity_id)
        competitors_deleted = await competitor_repo.delete_by_opportunity(
            opportunity.opportunity_id
        )

    await repo.delete(id)
    return JSONResponse(
        content={
            "status": "success",
            "message": "Opportunity deleted successfully",
            "risks_deleted": risks_deleted,
            "competitors_deleted": competitors_deleted,
        },
    )
