"""Opportunity store repositories -- async CRUD for opportunities, risks, competitors.

Provides OpportunityRepository, RiskRepository, and CompetitorRepository,
all built on the session_factory callable pattern. Each converts between
Pydantic schemas and SQLAlchemy models so nothing above this layer sees an
ORM object.

Uniqueness of the business opportunity_id is enforced by the table; the
resulting IntegrityError is translated to DuplicateKeyError here.
"""

from __future__ import annotations

import math
from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import ColumnElement, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.errors import DuplicateKeyError
from src.app.opportunities.models import CompetitorModel, OpportunityModel, RiskModel
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

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

DEFAULT_SORT = "-created_at"


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_opportunity(model: OpportunityModel) -> OpportunityRead:
    """Convert OpportunityModel to OpportunityRead schema."""
    return OpportunityRead(
        id=model.id,
        opportunity_id=model.opportunity_id,
        name=model.name,
        external_object_id=model.external_object_id,
        account_id=model.account_id,
        sales_stage=model.sales_stage,
        expected_revenue_amount=model.expected_revenue_amount,
        currency=model.currency or "USD",
        close_date=model.close_date,
        source=model.source,
        raw_status_metadata=model.raw_status_metadata or {},
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_risk(model: RiskModel) -> RiskRead:
    """Convert RiskModel to RiskRead schema."""
    return RiskRead(
        id=model.id,
        title=model.title,
        description=model.description,
        impact=model.impact,
        probability=model.probability,
        status=model.status,
        owner=model.owner,
        mitigation=model.mitigation,
        due_date=model.due_date,
        opportunity_id=model.opportunity_id,
        opportunity_name=model.opportunity_name,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_competitor(model: CompetitorModel) -> CompetitorRead:
    """Convert CompetitorModel to CompetitorRead schema."""
    return CompetitorRead(
        id=model.id,
        name=model.name,
        strengths=model.strengths,
        weaknesses=model.weaknesses,
        threat_level=model.threat_level,
        status=model.status,
        strategy=model.strategy,
        price_position=model.price_position,
        win_probability=model.win_probability,
        notes=model.notes,
        opportunity_id=model.opportunity_id,
        opportunity_name=model.opportunity_name,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _order_by(model: type, sort: str | None) -> ColumnElement:
    """Translate a ``-field`` / ``field`` sort key into an ORDER BY clause.

    Unknown fields fall back to the default newest-first ordering.
    """
    sort = sort or DEFAULT_SORT
    descending = sort.startswith("-")
    field = sort.lstrip("-+")
    column = model.__table__.columns.get(field)
    if column is None:
        column, descending = model.__table__.columns["created_at"], True
    return column.desc() if descending else column.asc()


def _plain(value: Any) -> Any:
    """Store enums by value."""
    return getattr(value, "value", value)


def total_pages(total: int, limit: int) -> int:
    """Number of pages needed to show ``total`` rows ``limit`` at a time."""
    return math.ceil(total / limit) if limit > 0 else 0


# ── Opportunities ───────────────────────────────────────────────────────────


class OpportunityRepository:
    """Async CRUD for opportunity records.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, id: str) -> OpportunityRead | None:
        """Get an opportunity by its local primary key.

        Args:
            id: Local primary key.

        Returns:
            OpportunityRead if found, None otherwise.
        """
        async for session in self._session_factory():
            model = await session.get(OpportunityModel, id)
            if model is None:
                return None
            return _model_to_opportunity(model)

    async def find_one(self, **alternatives: str | None) -> OpportunityRead | None:
        """Find the first opportunity matching ANY of the given field values.

        Fields whose value is None are ignored. Used for the alternate-key
        lookups (external object id, business opportunity id).

        Args:
            **alternatives: Column name to value; combined with OR.

        Returns:
            OpportunityRead if a match is found, None otherwise.
        """
        clauses = [
            getattr(OpportunityModel, field) == value
            for field, value in alternatives.items()
            if value is not None
        ]
        if not clauses:
            return None

        async for session in self._session_factory():
            stmt = (
                select(OpportunityModel)
                .where(or_(*clauses))
                .order_by(OpportunityModel.created_at.asc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_opportunity(model)

    async def insert(self, data: OpportunityCreate) -> OpportunityRead:
        """Insert a new opportunity.

        Args:
            data: OpportunityCreate schema with opportunity details.

        Returns:
            OpportunityRead with all persisted fields.

        Raises:
            DuplicateKeyError: opportunity_id already exists.
        """
        async for session in self._session_factory():
            model = OpportunityModel(
                opportunity_id=data.opportunity_id,
                name=data.name,
                external_object_id=data.external_object_id,
                account_id=data.account_id,
                sales_stage=_plain(data.sales_stage),
                expected_revenue_amount=data.expected_revenue_amount,
                currency=data.currency,
                close_date=data.close_date,
                source=_plain(data.source),
                raw_status_metadata=data.raw_status_metadata,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.info("opportunity.duplicate", opportunity_id=data.opportunity_id)
                raise DuplicateKeyError(data.opportunity_id) from exc
            await session.refresh(model)
            return _model_to_opportunity(model)

    async def update(self, id: str, data: OpportunityUpdate) -> OpportunityRead | None:
        """Update an opportunity by primary key, writing only explicitly set fields.

        Args:
            id: Local primary key.
            data: OpportunityUpdate schema.

        Returns:
            Updated OpportunityRead, or None when no such record exists.

        Raises:
            DuplicateKeyError: opportunity_id changed to one already in use.
        """
        async for session in self._session_factory():
            model = await session.get(OpportunityModel, id)
            if model is None:
                return None

            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(model, field, _plain(value))

            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKeyError(data.opportunity_id or model.opportunity_id) from exc
            await session.refresh(model)
            return _model_to_opportunity(model)

    async def delete(self, id: str) -> bool:
        """Delete an opportunity by primary key.

        Returns:
            True if a record was deleted, False if none existed.
        """
        async for session in self._session_factory():
            result = await session.execute(
                delete(OpportunityModel).where(OpportunityModel.id == id)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_opportunities(
        self,
        filters: OpportunityFilter | None = None,
        page: int = 1,
        limit: int = 10,
        sort: str | None = None,
    ) -> tuple[list[OpportunityRead], int]:
        """List opportunities, one page at a time.

        Args:
            filters: Optional stage/source/search filters.
            page: 1-based page number.
            limit: Page size.
            sort: Sort key, ``-`` prefix for descending.

        Returns:
            Tuple of (page of OpportunityRead, total matching count).
        """
        clauses: list[ColumnElement] = []
        if filters:
            if filters.sales_stage:
                clauses.append(OpportunityModel.sales_stage == filters.sales_stage.value)
            if filters.source:
                clauses.append(OpportunityModel.source == filters.source.value)
            if filters.search:
                pattern = f"%{filters.search}%"
                clauses.append(
                    or_(
                        OpportunityModel.name.ilike(pattern),
                        OpportunityModel.opportunity_id.ilike(pattern),
                    )
                )

        async for session in self._session_factory():
            count_stmt = select(func.count()).select_from(OpportunityModel).where(*clauses)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                select(OpportunityModel)
                .where(*clauses)
                .order_by(_order_by(OpportunityModel, sort))
                .offset((page - 1) * limit)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_opportunity(m) for m in result.scalars().all()], total


# ── Risks ───────────────────────────────────────────────────────────────────


class RiskRepository:
    """Async CRUD for risks raised against opportunities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, id: str) -> RiskRead | None:
        async for session in self._session_factory():
            model = await session.get(RiskModel, id)
            if model is None:
                return None
            return _model_to_risk(model)

    async def insert(self, data: RiskCreate, opportunity_name: str | None) -> RiskRead:
        """Insert a risk, snapshotting the opportunity name at write time."""
        async for session in self._session_factory():
            model = RiskModel(
                title=data.title,
                description=data.description,
                impact=data.impact.value,
                probability=data.probability.value,
                status=data.status.value,
                owner=data.owner,
                mitigation=data.mitigation,
                due_date=data.due_date,
                opportunity_id=data.opportunity_id,
                opportunity_name=opportunity_name,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_risk(model)

    async def update(
        self,
        id: str,
        data: RiskUpdate,
        opportunity_name: str | None = None,
    ) -> RiskRead | None:
        """Update a risk; opportunity_name is rewritten only when given."""
        async for session in self._session_factory():
            model = await session.get(RiskModel, id)
            if model is None:
                return None

            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(model, field, _plain(value))
            if opportunity_name is not None:
                model.opportunity_name = opportunity_name

            await session.commit()
            await session.refresh(model)
            return _model_to_risk(model)

    async def delete(self, id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(delete(RiskModel).where(RiskModel.id == id))
            await session.commit()
            return result.rowcount > 0

    async def list_risks(
        self,
        filters: RiskFilter | None = None,
        page: int = 1,
        limit: int = 10,
        sort: str | None = None,
    ) -> tuple[list[RiskRead], int]:
        """List risks, one page at a time; returns (page, total)."""
        clauses: list[ColumnElement] = []
        if filters:
            if filters.opportunity_id:
                clauses.append(RiskModel.opportunity_id == filters.opportunity_id)
            if filters.status:
                clauses.append(RiskModel.status == filters.status.value)
            if filters.impact:
                clauses.append(RiskModel.impact == filters.impact.value)
            if filters.probability:
                clauses.append(RiskModel.probability == filters.probability.value)
            if filters.search:
                pattern = f"%{filters.search}%"
                clauses.append(
                    or_(
                        RiskModel.title.ilike(pattern),
                        RiskModel.description.ilike(pattern),
                    )
                )

        async for session in self._session_factory():
            count_stmt = select(func.count()).select_from(RiskModel).where(*clauses)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                select(RiskModel)
                .where(*clauses)
                .order_by(_order_by(RiskModel, sort))
                .offset((page - 1) * limit)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_risk(m) for m in result.scalars().all()], total

    async def list_by_opportunity(self, opportunity_id: str) -> list[RiskRead]:
        """All risks for one opportunity, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(RiskModel)
                .where(RiskModel.opportunity_id == opportunity_id)
                .order_by(RiskModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_risk(m) for m in result.scalars().all()]

    async def count_by_opportunity(self, opportunity_id: str) -> int:
        async for session in self._session_factory():
            stmt = (
                select(func.count())
                .select_from(RiskModel)
                .where(RiskModel.opportunity_id == opportunity_id)
            )
            return (await session.execute(stmt)).scalar_one()

    async def delete_by_opportunity(self, opportunity_id: str) -> int:
        """Delete every risk for one opportunity; returns the deleted count."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(RiskModel).where(RiskModel.opportunity_id == opportunity_id)
            )
            await session.commit()
            return result.rowcount

    async def stats(self, opportunity_id: str | None = None) -> RiskStats:
        """Aggregate risk counts by status and high impact/probability.

        Args:
            opportunity_id: Restrict the aggregation to one opportunity.

        Returns:
            RiskStats with all counters (zeros when there are no risks).
        """
        def _count_where(condition: ColumnElement) -> Any:
            return func.count().filter(condition)

        async for session in self._session_factory():
            stmt = select(
                func.count(),
                _count_where(RiskModel.status == RiskStatus.OPEN.value),
                _count_where(RiskModel.status == RiskStatus.MITIGATED.value),
                _count_where(RiskModel.status == RiskStatus.CLOSED.value),
                _count_where(RiskModel.impact == Level.HIGH.value),
                _count_where(RiskModel.probability == Level.HIGH.value),
            ).select_from(RiskModel)
            if opportunity_id:
                stmt = stmt.where(RiskModel.opportunity_id == opportunity_id)

            row = (await session.execute(stmt)).one()
            return RiskStats(
                total=row[0] or 0,
                open=row[1] or 0,
                mitigated=row[2] or 0,
                closed=row[3] or 0,
                high_impact=row[4] or 0,
                high_probability=row[5] or 0,
            )


# ── Competitors ─────────────────────────────────────────────────────────────


class CompetitorRepository:
    """Async CRUD for competitors tracked against opportunities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, id: str) -> CompetitorRead | None:
        async for session in self._session_factory():
            model = await session.get(CompetitorModel, id)
            if model is None:
                return None
            return _model_to_competitor(model)

    async def insert(
        self, data: CompetitorCreate, opportunity_name: str | None
    ) -> CompetitorRead:
        """Insert a competitor, snapshotting the opportunity name at write time."""
        async for session in self._session_factory():
            model = CompetitorModel(
                name=data.name,
                strengths=data.strengths,
                weaknesses=data.weaknesses,
                threat_level=data.threat_level.value,
                status=data.status.value,
                strategy=data.strategy,
                price_position=data.price_position.value,
                win_probability=data.win_probability,
                notes=data.notes,
                opportunity_id=data.opportunity_id,
                opportunity_name=opportunity_name,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_competitor(model)

    async def update(self, id: str, data: CompetitorUpdate) -> CompetitorRead | None:
        async for session in self._session_factory():
            model = await session.get(CompetitorModel, id)
            if model is None:
                return None

            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(model, field, _plain(value))

            await session.commit()
            await session.refresh(model)
            return _model_to_competitor(model)

    async def delete(self, id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(CompetitorModel).where(CompetitorModel.id == id)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_competitors(
        self,
        filters: CompetitorFilter | None = None,
        page: int = 1,
        limit: int = 10,
        sort: str | None = None,
    ) -> tuple[list[CompetitorRead], int]:
        """List competitors, one page at a time; returns (page, total)."""
        clauses: list[ColumnElement] = []
        if filters:
            if filters.threat_level:
                clauses.append(CompetitorModel.threat_level == filters.threat_level.value)
            if filters.status:
                clauses.append(CompetitorModel.status == filters.status.value)
            if filters.opportunity_id:
                clauses.append(CompetitorModel.opportunity_id == filters.opportunity_id)

        async for session in self._session_factory():
            count_stmt = select(func.count()).select_from(CompetitorModel).where(*clauses)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                select(CompetitorModel)
                .where(*clauses)
                .order_by(_order_by(CompetitorModel, sort))
                .offset((page - 1) * limit)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_competitor(m) for m in result.scalars().all()], total

    async def list_by_opportunity(self, opportunity_id: str) -> list[CompetitorRead]:
        """All competitors for one opportunity, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(CompetitorModel)
                .where(CompetitorModel.opportunity_id == opportunity_id)
                .order_by(CompetitorModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_competitor(m) for m in result.scalars().all()]

    async def count_by_opportunity(self, opportunity_id: str) -> int:
        async for session in self._session_factory():
            stmt = (
                select(func.count())
                .select_from(CompetitorModel)
                .where(CompetitorModel.opportunity_id == opportunity_id)
            )
            return (await session.execute(stmt)).scalar_one()

    async def delete_by_opportunity(self, opportunity_id: str) -> int:
        """Delete every competitor for one opportunity; returns the deleted count."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(CompetitorModel).where(
                    CompetitorModel.opportunity_id == opportunity_id
                )
            )
            await session.commit()
            return result.rowcount
