"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the error envelope handlers, lifespan events for database initialization and
SAP CRM wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.api.errors import register_exception_handlers
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.health import liveness_payload
from src.app.api.v1.router import router as v1_router
from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.opportunities.crm.sap import SapCrmClient, SapCrmConfig
from src.app.opportunities.crm.sync import OpportunitySyncService
from src.app.opportunities.repository import (
    CompetitorRepository,
    OpportunityRepository,
    RiskRepository,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and collaborators on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Stores ───────────────────────────────────────────────────────────
    opportunity_repository = OpportunityRepository(session_factory=get_session)
    app.state.opportunity_repository = opportunity_repository
    app.state.risk_repository = RiskRepository(session_factory=get_session)
    app.state.competitor_repository = CompetitorRepository(session_factory=get_session)

    # ── SAP CRM ──────────────────────────────────────────────────────────
    sap_config = SapCrmConfig.from_settings(settings)
    sap_client = SapCrmClient(sap_config)
    app.state.sap_crm_client = sap_client
    app.state.sync_service = OpportunitySyncService(
        repository=opportunity_repository,
        crm=sap_client,
    )
    log.info(
        "sap_crm.client_initialized",
        base_url=sap_config.base_url,
        endpoint=sap_config.endpoint,
        authenticated=sap_client.build_auth_header() is not None,
        timeout=sap_config.timeout,
        max_retries=sap_config.max_retries,
    )

    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    await close_db()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Opportunity Hub API",
        version="0.1.0",
        description="Opportunities, risks and competitors with SAP CRM read-through sync",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_exception_handlers(app)

    # Include v1 API router (health, opportunities, risks, competitors)
    app.include_router(v1_router)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        """Liveness at the root path."""
        return liveness_payload()

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
