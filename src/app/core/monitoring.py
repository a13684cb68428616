"""Prometheus metrics, Sentry integration, and CRM call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry for unhandled error reporting
- track_crm_call(): Context manager for outbound SAP CRM call metrics
- record_sync_outcome(): Per-record counter for the bulk sync job
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── CRM Metrics ──────────────────────────────────────────────────────────────

crm_requests_total = Counter(
    "crm_requests_total",
    "Total outbound SAP CRM requests",
    ["operation", "outcome"],
)

crm_request_duration_seconds = Histogram(
    "crm_request_duration_seconds",
    "Outbound SAP CRM request duration in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

crm_sync_records_total = Counter(
    "crm_sync_records_total",
    "Opportunity records processed by the bulk sync",
    ["outcome"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route path pattern (set once routing matched) keeps label cardinality low
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── CRM Metrics Helpers ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_crm_call(operation: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks an outbound SAP CRM call.

    Usage:
        async with track_crm_call("fetch_all") as tracker:
            response = await client.get(url)
            tracker["outcome"] = "success" if response.is_success else "bad_response"

    The outcome defaults to "success" and becomes "error" when the body raises.
    """
    tracker: dict[str, Any] = {"outcome": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["outcome"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        crm_requests_total.labels(
            operation=operation,
            outcome=tracker["outcome"],
        ).inc()
        crm_request_duration_seconds.labels(operation=operation).observe(duration)


def record_sync_outcome(outcome: str) -> None:
    """Count one record processed by the bulk sync (created/updated/error)."""
    crm_sync_records_total.labels(outcome=outcome).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )
    logger.info("sentry.initialized", environment=environment)


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
