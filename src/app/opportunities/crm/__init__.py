"""CRM integration layer -- read-through sync from SAP Sales Cloud.

Provides:
- CRMAdapter: Abstract read interface for an upstream CRM
- SapCrmClient / SapCrmConfig: SAP opportunity service client and its settings
- normalize(): Upstream record -> CanonicalOpportunity
- OpportunitySyncService: get-or-sync and bulk sync into the local store

Architecture: SAP CRM is the system of record; the local store serves reads
and is filled on demand or by an explicit bulk sync. Nothing is written back.
"""

from src.app.opportunities.crm.adapter import CRMAdapter
from src.app.opportunities.crm.normalizer import (
    extract_currency,
    extract_revenue,
    map_sales_stage,
    normalize,
)
from src.app.opportunities.crm.sap import SapCrmClient, SapCrmConfig
from src.app.opportunities.crm.sync import OpportunitySyncService

__all__ = [
    "CRMAdapter",
    "SapCrmClient",
    "SapCrmConfig",
    "OpportunitySyncService",
    "normalize",
    "map_sales_stage",
    "extract_revenue",
    "extract_currency",
]
