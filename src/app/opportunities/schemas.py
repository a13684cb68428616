"""Pydantic schemas for opportunities, risks, competitors, and CRM sync.

Defines all structured types crossing the store and API boundaries:
- Enums: SalesStage, OpportunitySource, Level, RiskStatus, CompetitorStatus, PricePosition
- CRM payloads: CanonicalOpportunity (normalizer output), ConnectionStatus,
  SyncErrorDetail, SyncReport
- Opportunity CRUD: OpportunityCreate/Update/Read/Filter
- Risk CRUD: RiskCreate/Update/Read/Filter, RiskStats
- Competitor CRUD: CompetitorCreate/Update/Read/Filter

CanonicalOpportunity is deliberately permissive (the normalizer must never
fail); the *Create/*Update schemas carry the store-level constraints.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ── Enums ───────────────────────────────────────────────────────────────────


class SalesStage(str, Enum):
    """Canonical sales stage; upstream statuses are mapped onto these."""

    QUALIFIED = "Qualified"
    PROPOSAL = "Proposal"
    NEGOTIATION = "Negotiation"
    WON = "Won"
    LOST = "Lost"


class OpportunitySource(str, Enum):
    """Provenance of a local opportunity record."""

    MANUAL = "manual"
    SAP_CRM = "sap_crm"


class Level(str, Enum):
    """Three-point scale shared by risk impact/probability and threat level."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class RiskStatus(str, Enum):
    OPEN = "Open"
    MITIGATED = "Mitigated"
    CLOSED = "Closed"


class CompetitorStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    WON = "Won"
    LOST = "Lost"


class PricePosition(str, Enum):
    LOWER = "Lower"
    SIMILAR = "Similar"
    HIGHER = "Higher"
    UNKNOWN = "Unknown"


_LEVEL_SCORE: dict[Level, int] = {Level.LOW: 1, Level.MEDIUM: 2, Level.HIGH: 3}


# ── CRM Payloads ────────────────────────────────────────────────────────────


class CanonicalOpportunity(BaseModel):
    """Normalized opportunity, independent of upstream field naming.

    source is left unset by the normalizer; the caller that decides where
    the record came from tags it.
    """

    external_object_id: str | None = None
    opportunity_id: str = ""
    name: str = "Unnamed Opportunity"
    account_id: str | None = None
    sales_stage: SalesStage = SalesStage.QUALIFIED
    expected_revenue_amount: float = 0.0
    currency: str = "USD"
    close_date: date | None = None
    source: OpportunitySource | None = None
    raw_status_metadata: dict[str, Any] = Field(default_factory=dict)


class ConnectionStatus(BaseModel):
    """Outcome of an upstream reachability probe."""

    success: bool
    status: int | None = None
    error: str | None = None


class SyncErrorDetail(BaseModel):
    """A single record that failed during bulk sync."""

    opportunity_id: str
    error: str


class SyncReport(BaseModel):
    """Summary of a bulk sync run. Partial success is the expected outcome."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    errors: list[SyncErrorDetail] = Field(default_factory=list)


# ── Opportunity CRUD Schemas ────────────────────────────────────────────────


class OpportunityCreate(BaseModel):
    """Schema for inserting an opportunity into the local store."""

    model_config = ConfigDict(str_strip_whitespace=True)

    opportunity_id: str = Field(min_length=1, max_length=200)
    name: str = Field(min_length=1, max_length=200)
    external_object_id: str | None = Field(default=None, max_length=200)
    account_id: str | None = Field(default=None, max_length=200)
    sales_stage: SalesStage | None = None
    expected_revenue_amount: float | None = Field(default=None, ge=0)
    currency: str = Field(default="USD", max_length=3)
    close_date: date | None = None
    source: OpportunitySource = OpportunitySource.MANUAL
    raw_status_metadata: dict[str, Any] = Field(default_factory=dict)


class OpportunityUpdate(BaseModel):
    """Schema for updating an opportunity; only explicitly set fields are written."""

    model_config = ConfigDict(str_strip_whitespace=True)

    opportunity_id: str | None = Field(default=None, min_length=1, max_length=200)
    name: str | None = Field(default=None, min_length=1, max_length=200)
    external_object_id: str | None = Field(default=None, max_length=200)
    account_id: str | None = Field(default=None, max_length=200)
    sales_stage: SalesStage | None = None
    expected_revenue_amount: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, max_length=3)
    close_date: date | None = None
    source: OpportunitySource | None = None
    raw_status_metadata: dict[str, Any] | None = None


class OpportunityRead(BaseModel):
    """Schema for reading an opportunity (includes all persisted fields)."""

    id: str
    opportunity_id: str
    name: str
    external_object_id: str | None = None
    account_id: str | None = None
    sales_stage: SalesStage | None = None
    expected_revenue_amount: float | None = None
    currency: str = "USD"
    close_date: date | None = None
    source: OpportunitySource = OpportunitySource.MANUAL
    raw_status_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OpportunityFilter(BaseModel):
    """Filter criteria for listing opportunities."""

    sales_stage: SalesStage | None = None
    source: OpportunitySource | None = None
    search: str | None = None


# ── Risk Schemas ────────────────────────────────────────────────────────────


class RiskCreate(BaseModel):
    """Schema for creating a risk against an opportunity."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    impact: Level
    probability: Level
    status: RiskStatus = RiskStatus.OPEN
    owner: str | None = Field(default=None, max_length=100)
    mitigation: str | None = Field(default=None, max_length=1000)
    due_date: date | None = None
    opportunity_id: str = Field(min_length=1, max_length=200)


class RiskUpdate(BaseModel):
    """Schema for updating a risk (all fields optional)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    impact: Level | None = None
    probability: Level | None = None
    status: RiskStatus | None = None
    owner: str | None = Field(default=None, max_length=100)
    mitigation: str | None = Field(default=None, max_length=1000)
    due_date: date | None = None
    opportunity_id: str | None = Field(default=None, min_length=1, max_length=200)


class RiskRead(BaseModel):
    """Schema for reading a risk, with derived score and level."""

    id: str
    title: str
    description: str | None = None
    impact: Level
    probability: Level
    status: RiskStatus = RiskStatus.OPEN
    owner: str | None = None
    mitigation: str | None = None
    due_date: date | None = None
    opportunity_id: str
    opportunity_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def risk_score(self) -> int:
        return _LEVEL_SCORE.get(self.impact, 0) * _LEVEL_SCORE.get(self.probability, 0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def risk_level(self) -> str:
        score = self.risk_score
        if score >= 6:
            return "Critical"
        if score >= 4:
            return "High"
        if score >= 2:
            return "Medium"
        return "Low"


class RiskFilter(BaseModel):
    """Filter criteria for listing risks."""

    opportunity_id: str | None = None
    status: RiskStatus | None = None
    impact: Level | None = None
    probability: Level | None = None
    search: str | None = None


class RiskStats(BaseModel):
    """Aggregate risk counts, optionally scoped to one opportunity."""

    total: int = 0
    open: int = 0
    mitigated: int = 0
    closed: int = 0
    high_impact: int = 0
    high_probability: int = 0


# ── Competitor Schemas ──────────────────────────────────────────────────────


class CompetitorCreate(BaseModel):
    """Schema for creating a competitor against an opportunity."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)
    strengths: str | None = Field(default=None, max_length=1000)
    weaknesses: str | None = Field(default=None, max_length=1000)
    threat_level: Level = Level.MEDIUM
    status: CompetitorStatus = CompetitorStatus.ACTIVE
    strategy: str | None = Field(default=None, max_length=1000)
    price_position: PricePosition = PricePosition.UNKNOWN
    win_probability: float | None = Field(default=None, ge=0, le=100)
    notes: str | None = Field(default=None, max_length=2000)
    opportunity_id: str = Field(min_length=1, max_length=200)


class CompetitorUpdate(BaseModel):
    """Schema for updating a competitor (all fields optional)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=200)
    strengths: str | None = Field(default=None, max_length=1000)
    weaknesses: str | None = Field(default=None, max_length=1000)
    threat_level: Level | None = None
    status: CompetitorStatus | None = None
    strategy: str | None = Field(default=None, max_length=1000)
    price_position: PricePosition | None = None
    win_probability: float | None = Field(default=None, ge=0, le=100)
    notes: str | None = Field(default=None, max_length=2000)


class CompetitorRead(BaseModel):
    """Schema for reading a competitor, with derived threat score."""

    id: str
    name: str
    strengths: str | None = None
    weaknesses: str | None = None
    threat_level: Level = Level.MEDIUM
    status: CompetitorStatus = CompetitorStatus.ACTIVE
    strategy: str | None = None
    price_position: PricePosition = PricePosition.UNKNOWN
    win_probability: float | None = None
    notes: str | None = None
    opportunity_id: str
    opportunity_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def threat_score(self) -> int:
        return _LEVEL_SCORE.get(self.threat_level, 0)


class CompetitorFilter(BaseModel):
    """Filter criteria for listing competitors."""

    threat_level: Level | None = None
    status: CompetitorStatus | None = None
    opportunity_id: str | None = None
