"""Unit tests for observability and the app shell.

Tests cover:
- track_crm_call outcome labels on success, bad response and error
- record_sync_outcome counter
- /metrics exposition and MetricsMiddleware counting
- Liveness at / and /api/v1/health, readiness degraded without a database
- Error envelope for unhandled exceptions
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.app.api.errors import register_exception_handlers
from src.app.core.monitoring import (
    crm_requests_total,
    crm_sync_records_total,
    record_sync_outcome,
    track_crm_call,
)
from src.app.main import create_app


def _crm_count(operation: str, outcome: str) -> float:
    return crm_requests_total.labels(operation=operation, outcome=outcome)._value.get()


# ── CRM Metrics ──────────────────────────────────────────────────────────────


class TestCrmMetrics:
    """Tests for the outbound SAP CRM call metrics."""

    async def test_track_crm_call_success(self):
        before = _crm_count("test_op", "success")

        async with track_crm_call("test_op"):
            pass

        assert _crm_count("test_op", "success") == before + 1

    async def test_track_crm_call_bad_response(self):
        before = _crm_count("test_op", "bad_response")

        async with track_crm_call("test_op") as tracker:
            tracker["outcome"] = "bad_response"

        assert _crm_count("test_op", "bad_response") == before + 1

    async def test_track_crm_call_error(self):
        before = _crm_count("test_op", "error")

        with pytest.raises(ValueError, match="test error"):
            async with track_crm_call("test_op"):
                raise ValueError("test error")

        assert _crm_count("test_op", "error") == before + 1

    def test_record_sync_outcome(self):
        before = crm_sync_records_total.labels(outcome="created")._value.get()

        record_sync_outcome("created")

        assert crm_sync_records_total.labels(outcome="created")._value.get() == before + 1


# ── App Shell ────────────────────────────────────────────────────────────────


@pytest.fixture
async def app_client():
    """Client over the full app (middleware included, lifespan not run)."""
    transport = ASGITransport(app=create_app(), raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestAppShell:
    async def test_root_liveness(self, app_client):
        response = await app_client.get("/")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["version"] == "v1"
        assert "timestamp" in body

    async def test_health_sets_request_id(self, app_client):
        response = await app_client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.headers.get("X-Request-ID")

    async def test_metrics_endpoint_counts_requests(self, app_client):
        await app_client.get("/api/v1/health")

        response = await app_client.get("/metrics")

        assert response.status_code == 200
        assert 'endpoint="/api/v1/health"' in response.text

    async def test_readiness_degraded_without_database(self, app_client):
        with patch(
            "src.app.api.v1.health.get_engine",
            side_effect=RuntimeError("no database"),
        ):
            response = await app_client.get("/api/v1/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"] == "error"

    async def test_missing_collaborator_is_503(self, app_client):
        """Without the lifespan nothing is on app.state."""
        response = await app_client.get("/api/v1/opportunities")

        assert response.status_code == 503
        assert response.json() == {
            "status": "error",
            "message": "Opportunity store not initialized",
        }


class TestErrorEnvelope:
    async def test_unhandled_exception_is_500_envelope(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/boom")
        async def boom():
            raise RuntimeError("kaboom")

        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/boom")

        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "Internal server error"}

    async def test_unknown_route_is_404_envelope(self):
        app = FastAPI()
        register_exception_handlers(app)

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/nowhere")

        assert response.status_code == 404
        assert response.json() == {"status": "error", "message": "Not Found"}
