"""Shared test fixtures.

Provides:
- In-memory test doubles for the three repositories (no database)
- A mocked CRMAdapter (AsyncMock with spec)
- FastAPI test app wired with the doubles on app.state
- Async HTTP client over ASGITransport
"""

from __future__ import annotations

import itertools
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.core.errors import DuplicateKeyError
from src.app.opportunities.crm.adapter import CRMAdapter
from src.app.opportunities.crm.sync import OpportunitySyncService
from src.app.opportunities.schemas import (
    CompetitorCreate,
    CompetitorFilter,
    CompetitorRead,
    CompetitorUpdate,
    Level,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
    RiskCreate,
    RiskFilter,
    RiskRead,
    RiskStats,
    RiskStatus,
    RiskUpdate,
)

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)
_tick = itertools.count()


def _now() -> datetime:
    """Strictly increasing timestamps so newest-first ordering is deterministic."""
    return _EPOCH + timedelta(seconds=next(_tick))


def _page(items: list, page: int, limit: int, sort: str | None) -> list:
    sort = sort or "-created_at"
    field = sort.lstrip("-+")
    if items and not hasattr(items[0], field):
        field, sort = "created_at", "-created_at"
    ordered = sorted(
        items,
        key=lambda item: (getattr(item, field) is None, getattr(item, field) or ""),
        reverse=sort.startswith("-"),
    )
    start = (page - 1) * limit
    return ordered[start:start + limit]


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryOpportunityRepository:
    """In-memory OpportunityRepository for testing without database."""

    def __init__(self) -> None:
        self._records: dict[str, OpportunityRead] = {}

    def _assert_unique(self, opportunity_id: str, exclude: str | None = None) -> None:
        for record in self._records.values():
            if record.opportunity_id == opportunity_id and record.id != exclude:
                raise DuplicateKeyError(opportunity_id)

    async def get(self, id: str) -> OpportunityRead | None:
        return self._records.get(id)

    async def find_one(self, **alternatives: str | None) -> OpportunityRead | None:
        wanted = {k: v for k, v in alternatives.items() if v is not None}
        for record in self._records.values():
            if any(getattr(record, k) == v for k, v in wanted.items()):
                return record
        return None

    async def insert(self, data: OpportunityCreate) -> OpportunityRead:
        self._assert_unique(data.opportunity_id)
        now = _now()
        record = OpportunityRead(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=None,
            **data.model_dump(),
        )
        self._records[record.id] = record
        return record

    async def update(self, id: str, data: OpportunityUpdate) -> OpportunityRead | None:
        record = self._records.get(id)
        if record is None:
            return None
        changes = data.model_dump(exclude_unset=True)
        if "opportunity_id" in changes:
            self._assert_unique(changes["opportunity_id"], exclude=id)
        updated = record.model_copy(update={**changes, "updated_at": _now()})
        self._records[id] = updated
        return updated

    async def delete(self, id: str) -> bool:
        return self._records.pop(id, None) is not None

    async def list_opportunities(
        self,
        filters: OpportunityFilter | None = None,
        page: int = 1,
        limit: int = 10,
        sort: str | None = None,
    ) -> tuple[list[OpportunityRead], int]:
        result = list(self._records.values())
        if filters:
            if filters.sales_stage:
                result = [o for o in result if o.sales_stage == filters.sales_stage]
            if filters.source:
                result = [o for o in result if o.source == filters.source]
            if filters.search:
                needle = filters.search.lower()
                result = [
                    o for o in result
                    if needle in o.name.lower() or needle in o.opportunity_id.lower()
                ]
        return _page(result, page, limit, sort), len(result)


class InMemoryRiskRepository:
    """In-memory RiskRepository for testing without database."""

    def __init__(self) -> None:
        self._records: dict[str, RiskRead] = {}

    async def get(self, id: str) -> RiskRead | None:
        return self._records.get(id)

    async def insert(self, data: RiskCreate, opportunity_name: str | None) -> RiskRead:
        record = RiskRead(
            id=str(uuid.uuid4()),
            opportunity_name=opportunity_name,
            created_at=_now(),
            **data.model_dump(),
        )
        self._records[record.id] = record
        return record

    async def update(
        self, id: str, data: RiskUpdate, opportunity_name: str | None = None
    ) -> RiskRead | None:
        record = self._records.get(id)
        if record is None:
            return None
        changes: dict[str, Any] = data.model_dump(exclude_unset=True)
        if opportunity_name is not None:
            changes["opportunity_name"] = opportunity_name
        updated = record.model_copy(update={**changes, "updated_at": _now()})
        self._records[id] = updated
        return updated

    async def delete(self, id: str) -> bool:
        return self._records.pop(id, None) is not None

    async def list_risks(
        self,
        filters: RiskFilter | None = None,
        page: int = 1,
        limit: int = 10,
        sort: str | None = None,
    ) -> tuple[list[RiskRead], int]:
        result = list(self._records.values())
        if filters:
            if filters.opportunity_id:
                result = [r for r in result if r.opportunity_id == filters.opportunity_id]
            if filters.status:
                result = [r for r in result if r.status == filters.status]
            if filters.impact:
                result = [r for r in result if r.impact == filters.impact]
            if filters.probability:
                result = [r for r in result if r.probability == filters.probability]
            if filters.search:
                needle = filters.search.lower()
                result = [
                    r for r in result
                    if needle in r.title.lower() or needle in (r.description or "").lower()
                ]
        return _page(result, page, limit, sort), len(result)

    async def list_by_opportunity(self, opportunity_id: str) -> list[RiskRead]:
        matches = [r for r in self._records.values() if r.opportunity_id == opportunity_id]
        return sorted(matches, key=lambda r: r.created_at, reverse=True)

    async def count_by_opportunity(self, opportunity_id: str) -> int:
        return len(await self.list_by_opportunity(opportunity_id))

    async def delete_by_opportunity(self, opportunity_id: str) -> int:
        doomed = [k for k, r in self._records.items() if r.opportunity_id == opportunity_id]
        for key in doomed:
            del self._records[key]
        return len(doomed)

    async def stats(self, opportunity_id: str | None = None) -> RiskStats:
        risks = [
            r for r in self._records.values()
            if opportunity_id is None or r.opportunity_id == opportunity_id
        ]
        return RiskStats(
            total=len(risks),
            open=sum(r.status == RiskStatus.OPEN for r in risks),
            mitigated=sum(r.status == RiskStatus.MITIGATED for r in risks),
            closed=sum(r.status == RiskStatus.CLOSED for r in risks),
            high_impact=sum(r.impact == Level.HIGH for r in risks),
            high_probability=sum(r.probability == Level.HIGH for r in risks),
        )


class InMemoryCompetitorRepository:
    """In-memory CompetitorRepository for testing without database."""

    def __init__(self) -> None:
        self._records: dict[str, CompetitorRead] = {}

    async def get(self, id: str) -> CompetitorRead | None:
        return self._records.get(id)

    async def insert(
        self, data: CompetitorCreate, opportunity_name: str | None
    ) -> CompetitorRead:
        record = CompetitorRead(
            id=str(uuid.uuid4()),
            opportunity_name=opportunity_name,
            created_at=_now(),
            **data.model_dump(),
        )
        self._records[record.id] = record
        return record

    async def update(self, id: str, data: CompetitorUpdate) -> CompetitorRead | None:
        record = self._records.get(id)
        if record is None:
            return None
        updated = record.model_copy(
            update={**data.model_dump(exclude_unset=True), "updated_at": _now()}
        )
        self._records[id] = updated
        return updated

    async def delete(self, id: str) -> bool:
        return self._records.pop(id, None) is not None

    async def list_competitors(
        self,
        filters: CompetitorFilter | None = None,
        page: int = 1,
        limit: int = 10,
        sort: str | None = None,
    ) -> tuple[list[CompetitorRead], int]:
        result = list(self._records.values())
        if filters:
            if filters.threat_level:
                result = [c for c in result if c.threat_level == filters.threat_level]
            if filters.status:
                result = [c for c in result if c.status == filters.status]
            if filters.opportunity_id:
                result = [c for c in result if c.opportunity_id == filters.opportunity_id]
        return _page(result, page, limit, sort), len(result)

    async def list_by_opportunity(self, opportunity_id: str) -> list[CompetitorRead]:
        matches = [c for c in self._records.values() if c.opportunity_id == opportunity_id]
        return sorted(matches, key=lambda c: c.created_at, reverse=True)

    async def count_by_opportunity(self, opportunity_id: str) -> int:
        return len(await self.list_by_opportunity(opportunity_id))

    async def delete_by_opportunity(self, opportunity_id: str) -> int:
        doomed = [k for k, c in self._records.items() if c.opportunity_id == opportunity_id]
        for key in doomed:
            del self._records[key]
        return len(doomed)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def opportunity_repo() -> InMemoryOpportunityRepository:
    return InMemoryOpportunityRepository()


@pytest.fixture
def risk_repo() -> InMemoryRiskRepository:
    return InMemoryRiskRepository()


@pytest.fixture
def competitor_repo() -> InMemoryCompetitorRepository:
    return InMemoryCompetitorRepository()


@pytest.fixture
def mock_crm() -> AsyncMock:
    """CRMAdapter double; defaults to an upstream that knows nothing."""
    crm = AsyncMock(spec=CRMAdapter)
    crm.fetch_opportunity_by_id.return_value = None
    crm.fetch_all_opportunities.return_value = []
    return crm


@pytest.fixture
def sync_service(opportunity_repo, mock_crm) -> OpportunitySyncService:
    return OpportunitySyncService(repository=opportunity_repo, crm=mock_crm)


def _make_test_app():
    """Create the API without lifespan (no database, no SAP client)."""
    from fastapi import FastAPI

    from src.app.api.errors import register_exception_handlers
    from src.app.api.v1.router import router

    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(router)
    return app


@pytest.fixture
def test_app(opportunity_repo, risk_repo, competitor_repo, sync_service):
    """App wired with the in-memory doubles on app.state."""
    app = _make_test_app()
    app.state.opportunity_repository = opportunity_repo
    app.state.risk_repository = risk_repo
    app.state.competitor_repository = competitor_repo
    app.state.sync_service = sync_service
    return app


@pytest_asyncio.fixture
async def client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the test app."""
    transport = ASGITransport(app=test_app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
