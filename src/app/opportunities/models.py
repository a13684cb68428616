"""Persistence models for opportunities and their dependent records.

Three SQLAlchemy models on the shared declarative Base:
- OpportunityModel: Canonical opportunity, unique on business opportunity_id
- RiskModel: Risk raised against an opportunity
- CompetitorModel: Competitor tracked against an opportunity

Risks and competitors reference opportunities by the business
opportunity_id (application-level referential integrity, no FK constraint)
and carry an opportunity_name snapshot captured at write time.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Float,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class OpportunityModel(Base):
    """Opportunity record, either entered manually or synced from SAP CRM.

    opportunity_id is the business identifier and is unique; id is the
    local primary key. raw_status_metadata keeps the upstream
    status/phase/priority fields verbatim for audit.
    """

    __tablename__ = "opportunities"
    __table_args__ = (
        Index("ix_opportunities_sales_stage", "sales_stage"),
        Index("ix_opportunities_close_date", "close_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    external_object_id: Mapped[str | None] = mapped_column(
        String(200), nullable=True, index=True
    )
    opportunity_id: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    sales_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    expected_revenue_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    source: Mapped[str] = mapped_column(String(20), default="manual")
    raw_status_metadata: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class RiskModel(Base):
    """Risk raised against an opportunity.

    impact and probability are Low/Medium/High; the risk score and level
    are derived on read, not stored.
    """

    __tablename__ = "risks"
    __table_args__ = (
        Index("ix_risks_opportunity_status", "opportunity_id", "status"),
        Index("ix_risks_due_date", "due_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    impact: Mapped[str] = mapped_column(String(10), nullable=False)
    probability: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(10), default="Open", index=True)
    owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mitigation: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    opportunity_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    opportunity_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class CompetitorModel(Base):
    """Competitor tracked against an opportunity."""

    __tablename__ = "competitors"
    __table_args__ = (
        Index("ix_competitors_opportunity_status", "opportunity_id", "status"),
        Index("ix_competitors_threat_level", "threat_level"),
        Index("ix_competitors_name", "name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    strengths: Mapped[str | None] = mapped_column(Text, nullable=True)
    weaknesses: Mapped[str | None] = mapped_column(Text, nullable=True)
    threat_level: Mapped[str] = mapped_column(String(10), default="Medium")
    status: Mapped[str] = mapped_column(String(10), default="Active")
    strategy: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_position: Mapped[str] = mapped_column(String(10), default="Unknown")
    win_probability: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    opportunity_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    opportunity_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
