"""Read-through sync between the SAP CRM and the local opportunity store.

OpportunitySyncService is the single home of the "find locally, else fetch
from the CRM and persist" flow used by every handler that resolves an
opportunity id, plus the bulk pull behind the sync/refresh endpoints.

Error policy:
- get_or_sync raises NotFoundError only when both the store and the CRM
  have nothing; CRM failures propagate unchanged.
- sync_all fails as a whole only when the bulk fetch fails. Per-record
  failures are collected into the report and never abort the batch.
"""

from __future__ import annotations

import structlog
from pydantic import ValidationError

from src.app.core.errors import NotFoundError, RecordValidationError
from src.app.core.monitoring import record_sync_outcome
from src.app.opportunities.crm.adapter import CRMAdapter
from src.app.opportunities.repository import OpportunityRepository
from src.app.opportunities.schemas import (
    CanonicalOpportunity,
    ConnectionStatus,
    OpportunityCreate,
    OpportunityRead,
    OpportunitySource,
    OpportunityUpdate,
    SyncErrorDetail,
    SyncReport,
)

logger = structlog.get_logger(__name__)


def to_store_record(opportunity: CanonicalOpportunity) -> OpportunityCreate:
    """Build the insert schema for a CRM-sourced opportunity.

    Raises:
        RecordValidationError: The record breaks a store constraint
            (missing business id, over-long name, ...).
    """
    try:
        return OpportunityCreate(
            **opportunity.model_dump(exclude={"source"}),
            source=OpportunitySource.SAP_CRM,
        )
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise RecordValidationError(
            f"Invalid CRM record {opportunity.opportunity_id or opportunity.external_object_id!r}: "
            f"{problems}"
        ) from exc


class OpportunitySyncService:
    """Orchestrates read-through and bulk sync from the CRM into the store.

    Args:
        repository: Local opportunity store.
        crm: Upstream CRM adapter.
    """

    def __init__(self, repository: OpportunityRepository, crm: CRMAdapter) -> None:
        self._repository = repository
        self._crm = crm

    async def _upsert(self, opportunity: CanonicalOpportunity) -> tuple[OpportunityRead, bool]:
        """Insert the record, or fully overwrite the one sharing its business id.

        Returns:
            Tuple of (persisted record, True if it was created).
        """
        record = to_store_record(opportunity)
        existing = await self._repository.find_one(opportunity_id=record.opportunity_id)
        if existing is None:
            return await self._repository.insert(record), True

        updated = await self._repository.update(
            existing.id, OpportunityUpdate(**record.model_dump())
        )
        if updated is None:
            # Deleted between lookup and write
            return await self._repository.insert(record), True
        return updated, False

    async def get_or_sync(self, id: str) -> OpportunityRead:
        """Resolve an opportunity by any identifier, pulling it from the CRM on a miss.

        Lookup order: local primary key, local external object id or
        business id, then the CRM. A CRM hit is persisted (tagged sap_crm)
        before it is returned, so the next lookup is served locally.

        Args:
            id: Local primary key, external object id, or business id.

        Returns:
            The persisted OpportunityRead.

        Raises:
            NotFoundError: Neither the store nor the CRM knows the id.
            UpstreamError: The CRM could not be asked.
        """
        local = await self._repository.get(id)
        if local is None:
            local = await self._repository.find_one(external_object_id=id, opportunity_id=id)
        if local is not None:
            return local

        logger.info("opportunity.local_miss", id=id)
        upstream = await self._crm.fetch_opportunity_by_id(id)
        if upstream is None:
            raise NotFoundError(f"Opportunity not found: {id}")

        record, created = await self._upsert(upstream)
        logger.info(
            "opportunity.synced_on_read",
            id=id,
            opportunity_id=record.opportunity_id,
            created=created,
        )
        return record

    async def sync_all(self, top: int = 100, skip: int = 0) -> SyncReport:
        """Pull one page of opportunities from the CRM and upsert each record.

        Records are processed sequentially; a CRM record whose business id
        matches a local one (manual or synced) overwrites it and re-tags it
        sap_crm.

        Args:
            top: Page size requested from the CRM.
            skip: Records to skip.

        Returns:
            SyncReport with fetched/created/updated counts and per-record errors.

        Raises:
            UpstreamError: The bulk fetch failed; nothing was written.
        """
        opportunities = await self._crm.fetch_all_opportunities(top=top, skip=skip)
        report = SyncReport(fetched=len(opportunities))

        for opportunity in opportunities:
            try:
                _, created = await self._upsert(opportunity)
            except Exception as exc:
                error_msg = getattr(exc, "message", None) or str(exc)
                report.errors.append(
                    SyncErrorDetail(
                        opportunity_id=opportunity.opportunity_id
                        or opportunity.external_object_id
                        or "",
                        error=error_msg,
                    )
                )
                record_sync_outcome("error")
                logger.error(
                    "opportunity.sync_record_failed",
                    opportunity_id=opportunity.opportunity_id,
                    error=error_msg,
                )
                continue

            if created:
                report.created += 1
                record_sync_outcome("created")
            else:
                report.updated += 1
                record_sync_outcome("updated")

        logger.info(
            "opportunity.sync_completed",
            fetched=report.fetched,
            created=report.created,
            updated=report.updated,
            errors=len(report.errors),
        )
        return report

    async def fetch_raw(self, id: str) -> CanonicalOpportunity | None:
        """Look an opportunity up in the CRM without persisting it."""
        opportunity = await self._crm.fetch_opportunity_by_id(id)
        if opportunity is None:
            return None
        return opportunity.model_copy(update={"source": OpportunitySource.SAP_CRM})

    async def fetch_page(self, top: int = 30, skip: int = 0) -> list[CanonicalOpportunity]:
        """One page of CRM opportunities, tagged sap_crm, not persisted."""
        opportunities = await self._crm.fetch_all_opportunities(top=top, skip=skip)
        return [
            opportunity.model_copy(update={"source": OpportunitySource.SAP_CRM})
            for opportunity in opportunities
        ]

    async def test_connection(self) -> ConnectionStatus:
        return await self._crm.test_connection()
