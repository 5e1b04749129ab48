"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that own the database handle and the deal repository, the
health endpoints, and the pipeline API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.outreach.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.outreach.api.v1 import health
from src.outreach.api.v1.router import router as v1_router
from src.outreach.config import get_settings
from src.outreach.core.database import Database
from src.outreach.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.outreach.pipeline.repository import DealRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: open the database and repository, dispose on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    database = Database(
        settings.DATABASE_URL,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )
    app.state.database = database
    app.state.deal_repository = DealRepository(
        session_factory=database.session,
        stagnant_days=settings.STAGNANT_DEAL_DAYS,
        velocity_window_days=settings.VELOCITY_WINDOW_DAYS,
    )
    log.info(
        "pipeline.initialized",
        environment=settings.ENVIRONMENT.value,
        stagnant_days=settings.STAGNANT_DEAL_DAYS,
        velocity_window_days=settings.VELOCITY_WINDOW_DAYS,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    app.state.deal_repository = None
    await database.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Outreach Pipeline API",
        version="0.1.0",
        description="Deal pipeline board: deals, stage moves, and pipeline analytics",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Health probes live at the root, the pipeline API under API_PREFIX
    app.include_router(health.router)
    app.include_router(v1_router, prefix=settings.API_PREFIX)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
