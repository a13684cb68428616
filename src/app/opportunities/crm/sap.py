"""SAP Sales Cloud opportunity client implementing the CRMAdapter interface.

Reads opportunities from the SAP C4C opportunity service over HTTPS with
optional Basic authentication. Every upstream record is normalized before
it leaves this module.

Failure policy:
- fetch_all_opportunities surfaces UpstreamUnreachable / UpstreamBadResponse
- fetch_opportunity_by_id recovers from any failure of the direct call by
  scanning the first page of the collection (that scan itself surfaces errors)
- test_connection never raises

Transport failures (connect errors, timeouts) are retried with exponential
backoff via tenacity; HTTP status errors are never retried.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.app.config import Settings
from src.app.core.errors import UpstreamBadResponse, UpstreamError, UpstreamUnreachable
from src.app.core.monitoring import track_crm_call
from src.app.opportunities.crm.adapter import CRMAdapter
from src.app.opportunities.crm.normalizer import OBJECT_ID_FIELDS, first_present, normalize
from src.app.opportunities.schemas import CanonicalOpportunity, ConnectionStatus

logger = structlog.get_logger(__name__)

DEFAULT_HEADERS: dict[str, str] = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "DataServiceVersion": "2.0",
}

# Upstream error bodies can be full HTML pages; keep messages readable
_MAX_BODY_CHARS = 1000


# ── Configuration ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SapCrmConfig:
    """Immutable connection settings for the SAP opportunity service.

    Built once at startup (see from_settings) and injected into
    SapCrmClient, so tests can point a client at any endpoint.
    """

    base_url: str
    endpoint: str
    username: str | None = None
    password: str | None = None
    timeout: float = 30.0
    max_retries: int = 3
    retry_backoff: float = 1.0
    headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    @classmethod
    def from_settings(cls, settings: Settings) -> SapCrmConfig:
        """Build the configuration from application settings."""
        return cls(
            base_url=settings.SAP_CRM_BASE_URL.rstrip("/"),
            endpoint=settings.SAP_CRM_ENDPOINT,
            username=settings.SAP_CRM_USERNAME or None,
            password=settings.SAP_CRM_PASSWORD or None,
            timeout=settings.SAP_CRM_TIMEOUT,
            max_retries=settings.SAP_CRM_MAX_RETRIES,
        )

    @property
    def collection_url(self) -> str:
        return f"{self.base_url}{self.endpoint}"


# ── Payload Shapes ─────────────────────────────────────────────────────────


def _extract_results(data: Any) -> list[Any]:
    """Pull the record list out of a collection response.

    Shapes tried in order: OData v2 ``{"d": {"results": [...]}}``,
    OData v4 / V2 REST ``{"value": [...]}``, a bare array.
    """
    if isinstance(data, list):
        return data
    if not isinstance(data, Mapping):
        return []

    wrapper = data.get("d")
    if isinstance(wrapper, Mapping) and isinstance(wrapper.get("results"), list):
        return wrapper["results"]
    if isinstance(data.get("value"), list):
        return data["value"]
    return []


def _extract_entity(data: Any) -> Mapping[str, Any] | None:
    """Pull a single record out of an entity response, None if unrecognisable.

    A collection-shaped body (``value`` holding a list) is not an entity
    response and yields None.
    """
    if not isinstance(data, Mapping):
        return None

    wrapper = data.get("d")
    if isinstance(wrapper, Mapping):
        data = wrapper

    value = data.get("value")
    if isinstance(value, Mapping) and value:
        return value
    if first_present(data, OBJECT_ID_FIELDS) is not None:
        return data
    return None


# ── Client ─────────────────────────────────────────────────────────────────


class SapCrmClient(CRMAdapter):
    """Async client for the SAP Sales Cloud opportunity service.

    Args:
        config: Connection settings (base URL, resource path, credentials,
            timeout, retry policy).
    """

    # Page size scanned by the single-record fallback
    LIST_FALLBACK_SIZE = 100

    def __init__(self, config: SapCrmConfig) -> None:
        self._config = config

    @property
    def config(self) -> SapCrmConfig:
        return self._config

    def build_auth_header(self) -> str | None:
        """``Basic base64(user:pass)`` when both credentials are set, else None."""
        if self._config.username and self._config.password:
            token = base64.b64encode(
                f"{self._config.username}:{self._config.password}".encode()
            ).decode("ascii")
            return f"Basic {token}"
        return None

    def _headers(self) -> dict[str, str]:
        headers = dict(self._config.headers)
        auth = self.build_auth_header()
        if auth:
            headers["Authorization"] = auth
        return headers

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured headers and timeout."""
        return httpx.AsyncClient(
            headers=self._headers(),
            timeout=self._config.timeout,
        )

    def _retrying(self) -> AsyncRetrying:
        backoff = self._config.retry_backoff
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self._config.max_retries)),
            wait=wait_exponential(multiplier=backoff, min=backoff, max=10 * backoff),
            retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
            reraise=True,
        )

    async def _get(self, url: str, operation: str) -> httpx.Response:
        """GET ``url`` with retries on transport failures.

        Raises:
            UpstreamUnreachable: Transport failure after the last attempt.
        """
        try:
            async with track_crm_call(operation) as tracker:
                async for attempt in self._retrying():
                    with attempt:
                        async with self._client() as client:
                            response = await client.get(url)
                if not response.is_success:
                    tracker["outcome"] = "bad_response"
                return response
        except httpx.TransportError as exc:
            logger.warning(
                "sap_crm.unreachable",
                operation=operation,
                url=url,
                error=str(exc) or type(exc).__name__,
            )
            raise UpstreamUnreachable(
                f"SAP CRM unreachable: {str(exc) or type(exc).__name__}"
            ) from exc

    @staticmethod
    def _bad_response(response: httpx.Response) -> UpstreamBadResponse:
        return UpstreamBadResponse(
            response.status_code,
            response.text[:_MAX_BODY_CHARS],
            response.reason_phrase,
        )

    @staticmethod
    def _read_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamBadResponse(
                response.status_code,
                response.text[:_MAX_BODY_CHARS],
                "response body is not valid JSON",
            ) from exc

    # ── CRMAdapter ─────────────────────────────────────────────────────────

    async def fetch_all_opportunities(
        self, top: int = 100, skip: int = 0
    ) -> list[CanonicalOpportunity]:
        """Fetch one page of opportunities and normalize every record.

        Args:
            top: Page size ($top).
            skip: Records to skip ($skip).

        Returns:
            Normalized opportunities (empty when the body has no known shape).

        Raises:
            UpstreamUnreachable: Network-level failure.
            UpstreamBadResponse: Non-2xx status or unreadable body.
        """
        url = f"{self._config.collection_url}?$top={top}&$skip={skip}"
        logger.info("sap_crm.fetch_all", url=url)

        response = await self._get(url, "fetch_all")
        if not response.is_success:
            logger.error(
                "sap_crm.fetch_all_failed",
                status_code=response.status_code,
                reason=response.reason_phrase,
            )
            raise self._bad_response(response)

        records = _extract_results(self._read_json(response))
        opportunities = [normalize(item) for item in records if isinstance(item, Mapping)]
        logger.info(
            "sap_crm.fetch_all_completed",
            count=len(opportunities),
            skipped=len(records) - len(opportunities),
        )
        return opportunities

    async def fetch_opportunity_by_id(self, id: str) -> CanonicalOpportunity | None:
        """Fetch one opportunity, falling back to a list scan when the direct call misses.

        The direct call counts as a hit only when it answers 2xx with a body
        carrying a recognisable identifier. Any failure of the direct call
        is logged and recovered by the fallback.

        Args:
            id: External object id or business opportunity id.

        Returns:
            CanonicalOpportunity, or None when upstream has no such record.

        Raises:
            UpstreamUnreachable / UpstreamBadResponse: Raised by the fallback scan.
        """
        url = f"{self._config.collection_url}/{quote(id, safe='')}"
        logger.info("sap_crm.fetch_by_id", id=id, url=url)

        try:
            response = await self._get(url, "fetch_by_id")
            if response.is_success:
                record = _extract_entity(self._read_json(response))
                if record is not None:
                    opportunity = normalize(record)
                    logger.info(
                        "sap_crm.fetch_by_id_found",
                        id=id,
                        name=opportunity.name,
                    )
                    return opportunity
            logger.info(
                "sap_crm.direct_fetch_miss",
                id=id,
                status_code=response.status_code,
            )
        except (UpstreamError, httpx.HTTPError) as exc:
            logger.warning("sap_crm.direct_fetch_failed", id=id, error=str(exc))

        return await self.fetch_opportunity_from_list(id)

    async def fetch_opportunity_from_list(self, id: str) -> CanonicalOpportunity | None:
        """Scan the first page of the collection for a matching record.

        Matches on external object id, business opportunity id, or external
        object id case-insensitively.
        """
        opportunities = await self.fetch_all_opportunities(top=self.LIST_FALLBACK_SIZE, skip=0)

        wanted = id.lower()
        for opportunity in opportunities:
            external_id = opportunity.external_object_id
            if (
                external_id == id
                or opportunity.opportunity_id == id
                or (external_id is not None and external_id.lower() == wanted)
            ):
                logger.info("sap_crm.found_via_list", id=id, name=opportunity.name)
                return opportunity

        logger.info("sap_crm.not_found", id=id, scanned=len(opportunities))
        return None

    async def test_connection(self) -> ConnectionStatus:
        """GET the collection with ``$top=1``; reports instead of raising."""
        url = f"{self._config.collection_url}?$top=1"
        logger.info("sap_crm.test_connection", url=url)

        try:
            response = await self._get(url, "test_connection")
        except Exception as exc:
            logger.warning("sap_crm.connection_failed", error=str(exc))
            return ConnectionStatus(success=False, error=str(exc))

        if response.is_success:
            logger.info("sap_crm.connection_ok", status_code=response.status_code)
            return ConnectionStatus(success=True, status=response.status_code)

        logger.warning("sap_crm.connection_rejected", status_code=response.status_code)
        return ConnectionStatus(
            success=False,
            status=response.status_code,
            error=response.reason_phrase or f"HTTP {response.status_code}",
        )
