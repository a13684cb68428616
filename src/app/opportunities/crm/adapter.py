"""CRM adapter abstract base class -- the read interface every upstream CRM implements.

SapCrmClient is the production implementation. The OpportunitySyncService
depends only on this interface, so tests substitute an AsyncMock with
spec=CRMAdapter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.app.opportunities.schemas import CanonicalOpportunity, ConnectionStatus


class CRMAdapter(ABC):
    """Abstract interface for reading opportunities from an upstream CRM.

    Methods:
        fetch_all_opportunities: One page of upstream opportunities, normalized.
        fetch_opportunity_by_id: A single opportunity by any upstream identifier.
        test_connection: Reachability probe that never raises.
    """

    @abstractmethod
    async def fetch_all_opportunities(
        self, top: int = 100, skip: int = 0
    ) -> list[CanonicalOpportunity]:
        """Fetch one page of opportunities.

        Raises:
            UpstreamUnreachable: Network-level failure.
            UpstreamBadResponse: Non-2xx status or unreadable body.
        """
        ...

    @abstractmethod
    async def fetch_opportunity_by_id(self, id: str) -> CanonicalOpportunity | None:
        """Fetch one opportunity by external object id or business id, None if absent."""
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionStatus:
        """Probe the upstream endpoint."""
        ...
