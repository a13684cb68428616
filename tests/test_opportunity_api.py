"""Integration tests for the opportunity REST API endpoints.

Tests use the in-memory repositories and a mocked CRMAdapter wired onto
app.state by the ``client`` fixture in conftest.py.
"""

from __future__ import annotations

from src.app.core.errors import UpstreamBadResponse, UpstreamUnreachable
from src.app.opportunities.crm.normalizer import normalize
from src.app.opportunities.schemas import (
    CompetitorCreate,
    ConnectionStatus,
    OpportunityCreate,
    OpportunitySource,
    RiskCreate,
)

BASE = "/api/v1/opportunities"


async def _seed(opportunity_repo, opportunity_id: str = "OPP-1", **fields):
    return await opportunity_repo.insert(
        OpportunityCreate(opportunity_id=opportunity_id, name=fields.pop("name", "Acme Deal"), **fields)
    )


# ── Create / Read ────────────────────────────────────────────────────────────


class TestCreateOpportunity:
    async def test_create_returns_201_and_manual_source(self, client):
        response = await client.post(
            BASE,
            json={
                "opportunity_id": "OPP-1",
                "name": "Acme Deal",
                "expected_revenue_amount": 5000,
                "source": "sap_crm",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "success"
        opp = body["data"]["opportunity"]
        assert opp["opportunity_id"] == "OPP-1"
        assert opp["source"] == "manual"
        assert opp["currency"] == "USD"

    async def test_duplicate_business_id_is_400(self, client, opportunity_repo):
        await _seed(opportunity_repo)

        response = await client.post(BASE, json={"opportunity_id": "OPP-1", "name": "Again"})

        assert response.status_code == 400
        assert response.json() == {
            "status": "error",
            "message": "Opportunity ID already exists: OPP-1",
        }

    async def test_missing_name_is_400(self, client):
        response = await client.post(BASE, json={"opportunity_id": "OPP-1"})

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert "name" in body["message"]

    async def test_negative_revenue_is_400(self, client):
        response = await client.post(
            BASE,
            json={"opportunity_id": "OPP-1", "name": "X", "expected_revenue_amount": -1},
        )
        assert response.status_code == 400


class TestGetOpportunity:
    async def test_get_by_primary_key(self, client, opportunity_repo):
        seeded = await _seed(opportunity_repo)

        response = await client.get(f"{BASE}/{seeded.id}")

        assert response.status_code == 200
        assert response.json()["data"]["opportunity"]["id"] == seeded.id

    async def test_get_by_business_id(self, client, opportunity_repo):
        seeded = await _seed(opportunity_repo)

        response = await client.get(f"{BASE}/OPP-1")

        assert response.status_code == 200
        assert response.json()["data"]["opportunity"]["id"] == seeded.id

    async def test_unknown_locally_is_synced_from_crm(self, client, mock_crm, opportunity_repo):
        mock_crm.fetch_opportunity_by_id.return_value = normalize(
            {"id": "O-1", "OpportunityID": "OPP-1", "Name": "Acme Deal", "status": "Negotiation"}
        )

        response = await client.get(f"{BASE}/O-1")

        assert response.status_code == 200
        opp = response.json()["data"]["opportunity"]
        assert opp["sales_stage"] == "Negotiation"
        assert opp["source"] == "sap_crm"
        _, total = await opportunity_repo.list_opportunities()
        assert total == 1

    async def test_unknown_everywhere_is_404(self, client):
        response = await client.get(f"{BASE}/nope")

        assert response.status_code == 404
        assert response.json() == {"status": "error", "message": "Opportunity not found: nope"}

    async def test_crm_unreachable_is_502(self, client, mock_crm):
        mock_crm.fetch_opportunity_by_id.side_effect = UpstreamUnreachable(
            "SAP CRM unreachable: connection refused"
        )

        response = await client.get(f"{BASE}/O-1")

        assert response.status_code == 502
        assert response.json()["status"] == "error"


# ── List / value-help ────────────────────────────────────────────────────────


class TestListOpportunities:
    async def test_pagination_envelope(self, client, opportunity_repo):
        for n in range(15):
            await _seed(opportunity_repo, f"OPP-{n}")

        response = await client.get(BASE, params={"page": 2, "limit": 10})

        data = response.json()["data"]
        assert len(data["opportunities"]) == 5
        assert data["total"] == 15
        assert data["total_pages"] == 2
        assert data["current_page"] == 2

    async def test_newest_first_by_default(self, client, opportunity_repo):
        await _seed(opportunity_repo, "OPP-OLD")
        await _seed(opportunity_repo, "OPP-NEW")

        response = await client.get(BASE)

        ids = [o["opportunity_id"] for o in response.json()["data"]["opportunities"]]
        assert ids == ["OPP-NEW", "OPP-OLD"]

    async def test_filters(self, client, opportunity_repo):
        await _seed(opportunity_repo, "OPP-1", name="Acme Rollout")
        await _seed(opportunity_repo, "OPP-2", name="Beta", source=OpportunitySource.SAP_CRM)

        by_source = await client.get(BASE, params={"source": "sap_crm"})
        by_search = await client.get(BASE, params={"search": "acme"})

        assert [o["opportunity_id"] for o in by_source.json()["data"]["opportunities"]] == ["OPP-2"]
        assert [o["opportunity_id"] for o in by_search.json()["data"]["opportunities"]] == ["OPP-1"]

    async def test_limit_above_100_is_400(self, client):
        response = await client.get(BASE, params={"limit": 101})
        assert response.status_code == 400

    async def test_value_help(self, client):
        response = await client.get(f"{BASE}/value-help")

        data = response.json()["data"]
        assert [s["code"] for s in data["sales_stages"]] == [
            "Qualified", "Proposal", "Negotiation", "Won", "Lost",
        ]
        assert {"code": "sap_crm", "text": "SAP CRM"} in data["sources"]
        assert "EUR" in [c["code"] for c in data["currencies"]]


# ── Update / Delete ──────────────────────────────────────────────────────────


class TestUpdateOpportunity:
    async def test_partial_update(self, client, opportunity_repo):
        seeded = await _seed(opportunity_repo, account_id="ACC-1")

        response = await client.patch(f"{BASE}/{seeded.id}", json={"name": "Renamed"})

        assert response.status_code == 200
        opp = response.json()["data"]["opportunity"]
        assert opp["name"] == "Renamed"
        assert opp["account_id"] == "ACC-1"

    async def test_put_to_taken_business_id_is_400(self, client, opportunity_repo):
        await _seed(opportunity_repo, "OPP-1")
        other = await _seed(opportunity_repo, "OPP-2")

        response = await client.put(f"{BASE}/{other.id}", json={"opportunity_id": "OPP-1"})

        assert response.status_code == 400

    async def test_update_missing_is_404(self, client):
        response = await client.put(f"{BASE}/missing", json={"name": "X"})
        assert response.status_code == 404


class TestDeleteOpportunity:
    async def test_delete_without_dependents(self, client, opportunity_repo):
        seeded = await _seed(opportunity_repo)

        response = await client.delete(f"{BASE}/{seeded.id}")

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert await opportunity_repo.get(seeded.id) is None

    async def test_refused_while_risks_exist(self, client, opportunity_repo, risk_repo):
        seeded = await _seed(opportunity_repo)
        await risk_repo.insert(
            RiskCreate(title="Budget", impact="High", probability="Low", opportunity_id="OPP-1"),
            opportunity_name="Acme Deal",
        )

        response = await client.delete(f"{BASE}/{seeded.id}")

        assert response.status_code == 400
        assert "cascade=true" in response.json()["message"]
        assert await opportunity_repo.get(seeded.id) is not None

    async def test_cascade_removes_risks_and_competitors(
        self, client, opportunity_repo, risk_repo, competitor_repo
    ):
        seeded = await _seed(opportunity_repo)
        await risk_repo.insert(
            RiskCreate(title="Budget", impact="High", probability="Low", opportunity_id="OPP-1"),
            opportunity_name="Acme Deal",
        )
        await competitor_repo.insert(
            CompetitorCreate(name="Rival Corp", opportunity_id="OPP-1"),
            opportunity_name="Acme Deal",
        )

        response = await client.delete(f"{BASE}/{seeded.id}", params={"cascade": "true"})

        assert response.status_code == 200
        body = response.json()
        assert body["risks_deleted"] == 1
        assert body["competitors_deleted"] == 1
        assert await risk_repo.count_by_opportunity("OPP-1") == 0

    async def test_delete_missing_is_404(self, client):
        response = await client.delete(f"{BASE}/missing")
        assert response.status_code == 404


# ── Sub-collections ──────────────────────────────────────────────────────────


class TestSubCollections:
    async def test_risks_of_opportunity(self, client, opportunity_repo, risk_repo):
        seeded = await _seed(opportunity_repo)
        await risk_repo.insert(
            RiskCreate(title="Budget", impact="High", probability="High", opportunity_id="OPP-1"),
            opportunity_name="Acme Deal",
        )

        response = await client.get(f"{BASE}/{seeded.id}/risks")

        data = response.json()["data"]
        assert data["risk_count"] == 1
        assert data["risks"][0]["risk_level"] == "Critical"

    async def test_competitors_of_opportunity(self, client, opportunity_repo, competitor_repo):
        await _seed(opportunity_repo)
        await competitor_repo.insert(
            CompetitorCreate(name="Rival Corp", opportunity_id="OPP-1", threat_level="High"),
            opportunity_name="Acme Deal",
        )

        response = await client.get(f"{BASE}/OPP-1/competitors")

        data = response.json()["data"]
        assert data["competitor_count"] == 1
        assert data["competitors"][0]["threat_score"] == 3


# ── SAP CRM endpoints ────────────────────────────────────────────────────────


class TestCrmEndpoints:
    async def test_connection_ok(self, client, mock_crm):
        mock_crm.test_connection.return_value = ConnectionStatus(success=True, status=200)

        response = await client.get(f"{BASE}/crm/test")

        assert response.status_code == 200
        assert response.json()["data"]["success"] is True

    async def test_connection_failed_is_502(self, client, mock_crm):
        mock_crm.test_connection.return_value = ConnectionStatus(
            success=False, status=401, error="Unauthorized"
        )

        response = await client.get(f"{BASE}/crm/test")

        assert response.status_code == 502
        body = response.json()
        assert body["status"] == "error"
        assert body["data"]["error"] == "Unauthorized"

    async def test_fetch_page_not_persisted(self, client, mock_crm, opportunity_repo):
        mock_crm.fetch_all_opportunities.return_value = [
            normalize({"ObjectID": "X1", "OpportunityID": "OPP-1", "Name": "Acme"})
        ]

        response = await client.get(f"{BASE}/crm/fetch")

        data = response.json()["data"]
        assert data["count"] == 1
        assert data["opportunities"][0]["source"] == "sap_crm"
        mock_crm.fetch_all_opportunities.assert_awaited_once_with(top=30, skip=0)
        _, total = await opportunity_repo.list_opportunities()
        assert total == 0

    async def test_fetch_single_missing_is_404(self, client):
        response = await client.get(f"{BASE}/crm/fetch/nope")
        assert response.status_code == 404

    async def test_sync_report(self, client, mock_crm):
        mock_crm.fetch_all_opportunities.return_value = [
            normalize({"ObjectID": "X1", "OpportunityID": "OPP-1", "Name": "Acme"}),
            normalize({"ObjectID": "X2", "Name": "No business id"}),
        ]

        response = await client.post(f"{BASE}/crm/sync")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["fetched"] == 2
        assert data["created"] == 1
        assert data["errors"] == 1
        assert data["error_details"][0]["opportunity_id"] == "X2"
        assert data["source"] == "sap_crm"
        mock_crm.fetch_all_opportunities.assert_awaited_once_with(top=100, skip=0)

    async def test_refresh_reports_record_errors(self, client, mock_crm):
        mock_crm.fetch_all_opportunities.return_value = [
            normalize({"Name": "x" * 250, "OpportunityID": "OPP-LONG"}),
        ]

        response = await client.post(f"{BASE}/refresh", params={"top": 5})

        data = response.json()["data"]
        assert data["errors"] == 1
        assert data["error_details"][0]["opportunity_id"] == "OPP-LONG"

    async def test_sync_upstream_failure_is_502(self, client, mock_crm):
        mock_crm.fetch_all_opportunities.side_effect = UpstreamBadResponse(
            503, "maintenance", "Service Unavailable"
        )

        response = await client.post(f"{BASE}/crm/sync")

        assert response.status_code == 502
        assert response.json() == {
            "status": "error",
            "message": "HTTP 503: Service Unavailable - maintenance",
        }

    async def test_sync_service_missing_is_503(self, client, test_app):
        test_app.state.sync_service = None

        response = await client.post(f"{BASE}/crm/sync")

        assert response.status_code == 503
        assert response.json()["status"] == "error"
