"""Upstream record normalization for SAP CRM opportunities.

SAP Sales Cloud exposes the same opportunity under different field names
depending on API generation (V2 REST camelCase vs. OData v2 PascalCase).
Each logical attribute is therefore read from an ordered list of
alternatives; the first non-empty value wins.

Defines:
- OBJECT_ID_FIELDS ... RAW_STATUS_METADATA_FIELDS: Alternative field names
- normalize(): Raw mapping -> CanonicalOpportunity
- map_sales_stage(): Free-text upstream status -> SalesStage
- extract_revenue() / extract_currency(): Nested-then-flat amount lookup

Nothing in this module raises for malformed input. Unparseable values
degrade to the attribute's default.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any

from src.app.opportunities.schemas import CanonicalOpportunity, SalesStage


# ── Field Alternatives ─────────────────────────────────────────────────────

OBJECT_ID_FIELDS = ("id", "ObjectID", "ID")
OPPORTUNITY_ID_FIELDS = ("displayId", "OpportunityID", "OpportunityNumber", "id")
NAME_FIELDS = ("name", "Name", "Description", "title")
ACCOUNT_ID_FIELDS = ("AccountID", "Account")
STATUS_FIELDS = ("status", "statusDescription", "SalesStage", "ProcessingStatusCodeText")
CLOSE_DATE_FIELDS = ("closeDate", "CloseDate", "ExpectedClosingDate", "ClosingDate")
REVENUE_FIELDS = ("ExpectedRevenueAmount", "ExpectedValue", "Amount")
CURRENCY_FIELDS = ("Currency", "CurrencyCodeText")
RAW_STATUS_METADATA_FIELDS = (
    "status",
    "statusDescription",
    "phase",
    "phaseDescription",
    "priority",
    "priorityDescription",
)

DEFAULT_NAME = "Unnamed Opportunity"
DEFAULT_CURRENCY = "USD"

# Checked in order; the first matching stage wins ("Closed Won" -> Won, not Qualified)
STAGE_KEYWORDS: tuple[tuple[SalesStage, tuple[str, ...]], ...] = (
    (SalesStage.WON, ("won",)),
    (SalesStage.LOST, ("lost",)),
    (SalesStage.NEGOTIATION, ("negotiation", "negotiate")),
    (SalesStage.PROPOSAL, ("proposal", "quote")),
    (SalesStage.QUALIFIED, ("qualified", "open")),
)

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_ODATA_DATE = re.compile(r"^/Date\((-?\d+)(?:[+-]\d{4})?\)/$")


# ── Value Helpers ──────────────────────────────────────────────────────────


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value is False


def first_present(raw: Mapping[str, Any], fields: tuple[str, ...]) -> Any:
    """Return the first non-empty value among ``fields``, or None."""
    for field in fields:
        value = raw.get(field)
        if not _is_empty(value):
            return value
    return None


def _is_empty_amount(value: Any) -> bool:
    """Amounts also treat numeric zero and NaN as absent; the string "0" is a value."""
    if _is_empty(value):
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0 or (isinstance(value, float) and math.isnan(value))
    return False


def _as_text(value: Any) -> str | None:
    if _is_empty(value):
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def parse_number(value: Any) -> float:
    """Parse the leading numeric prefix of ``value`` (``"1500.5 EUR"`` -> 1500.5).

    Returns 0.0 for anything unparseable, non-finite, or negative.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if match is None:
            return 0.0
        try:
            number = float(match.group(0))
        except ValueError:
            return 0.0
    else:
        return 0.0

    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def parse_close_date(value: Any) -> date | None:
    """Parse an ISO-8601 date/datetime or an OData ``/Date(ms)/`` literal."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    odata = _ODATA_DATE.match(text)
    if odata:
        try:
            return datetime.fromtimestamp(int(odata.group(1)) / 1000, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None

    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _nested(raw: Mapping[str, Any], parent: str, child: str) -> Any:
    container = raw.get(parent)
    if isinstance(container, Mapping):
        value = container.get(child)
        if not _is_empty(value):
            return value
    return None


# ── Public API ─────────────────────────────────────────────────────────────


def map_sales_stage(raw_status: Any) -> SalesStage:
    """Map a free-text upstream status to a canonical SalesStage.

    Case-insensitive substring match; absent, empty, or unrecognised input
    maps to Qualified.
    """
    text = _as_text(raw_status)
    if not text:
        return SalesStage.QUALIFIED

    lowered = text.lower()
    for stage, keywords in STAGE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return stage
    return SalesStage.QUALIFIED


def extract_revenue(raw: Mapping[str, Any]) -> float:
    """Expected revenue: nested ``expectedRevenueAmount.content`` first, then flat fields."""
    container = raw.get("expectedRevenueAmount")
    if isinstance(container, Mapping) and not _is_empty_amount(container.get("content")):
        return parse_number(container["content"])

    for field in REVENUE_FIELDS:
        value = raw.get(field)
        if not _is_empty_amount(value):
            return parse_number(value)
    return 0.0


def extract_currency(raw: Mapping[str, Any]) -> str:
    """Currency code: nested ``expectedRevenueAmount.currencyCode`` first, then flat fields."""
    nested = _as_text(_nested(raw, "expectedRevenueAmount", "currencyCode"))
    if nested:
        return nested

    flat = _as_text(first_present(raw, CURRENCY_FIELDS))
    return flat or DEFAULT_CURRENCY


def normalize(raw: Mapping[str, Any]) -> CanonicalOpportunity:
    """Convert one upstream opportunity record to a CanonicalOpportunity.

    Args:
        raw: Upstream record in any of the supported field-naming variants.

    Returns:
        CanonicalOpportunity with source left unset.
    """
    account_id = _as_text(_nested(raw, "account", "id")) or _as_text(
        first_present(raw, ACCOUNT_ID_FIELDS)
    )

    return CanonicalOpportunity(
        external_object_id=_as_text(first_present(raw, OBJECT_ID_FIELDS)),
        opportunity_id=_as_text(first_present(raw, OPPORTUNITY_ID_FIELDS)) or "",
        name=_as_text(first_present(raw, NAME_FIELDS)) or DEFAULT_NAME,
        account_id=account_id,
        sales_stage=map_sales_stage(first_present(raw, STATUS_FIELDS)),
        expected_revenue_amount=extract_revenue(raw),
        currency=extract_currency(raw),
        close_date=parse_close_date(first_present(raw, CLOSE_DATE_FIELDS)),
        raw_status_metadata={
            field: raw[field]
            for field in RAW_STATUS_METADATA_FIELDS
            if raw.get(field) is not None
        },
    )
