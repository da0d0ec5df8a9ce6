"""FastAPI application entry-point for the TenantSync service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from sync_api import __version__
from sync_api.config import APISettings, load_api_settings
from sync_api.dependencies import (
    dispose_clients,
    dispose_engine,
    get_delivery_queue,
    get_settings,
    init_clients,
    init_engine,
)
from sync_api.middleware.logging import RequestLoggingMiddleware
from sync_api.middleware.prometheus import PrometheusMiddleware
from sync_api.routers import health, saas_admin, tenants, webhooks
from sync_api.routers import metrics as metrics_router
from sync_api.services.delivery_scheduler import DeliveryScheduler
from sync_core.errors import TenantSyncError

logger = logging.getLogger(__name__)


def configure_logging(settings: APISettings) -> None:
    """Install the JSON formatter on the root logger when structured logging is on."""
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())
    if not settings.structured_logging:
        return

    from sync_api.middleware.json_formatter import JSONFormatter

    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    logger.info("Structured JSON logging enabled")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine and, for SQLite or when
      ``auto_create_tables`` is set, create the tables (production uses
      Alembic migrations).
    - Create the delivery queue and the data-plane client.
    - Start the delivery scheduler when this process serves the data plane.

    On shutdown the scheduler is stopped before the clients and the
    engine are disposed.
    """
    settings: APISettings = app.state.settings
    configure_logging(settings)

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, plane=%s)",
        "local SQLite" if is_local else "postgres",
        settings.plane.value,
    )

    if is_local or settings.auto_create_tables:
        from sync_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    init_clients(settings)

    scheduler: DeliveryScheduler | None = None
    if settings.plane.serves_data and settings.delivery_enabled:
        scheduler = DeliveryScheduler(get_delivery_queue(), settings.delivery_interval_seconds)
        await scheduler.start()
    app.state.delivery_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await dispose_clients()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application.

    Routers are mounted according to ``settings.plane``: the data plane
    serves the Command API under ``/api/v1/saas``, the control plane
    serves ``/api/v1/tenants`` and ``/api/v1/webhooks/tenant``.
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="TenantSync",
        description="Tenant lifecycle synchronization between a control plane and a data plane.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "x-saas-admin-key", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    if settings.plane.serves_data:
        app.include_router(saas_admin.router, prefix="/api/v1")
    if settings.plane.serves_control:
        app.include_router(tenants.router, prefix="/api/v1")
        app.include_router(webhooks.router, prefix="/api/v1")

    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(TenantSyncError)
    async def tenant_sync_error_handler(request: Request, exc: TenantSyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.kind, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.kind, "detail": exc.detail},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": str(exc)})

    @app.exception_handler(OperationalError)
    @app.exception_handler(InterfaceError)
    async def store_unavailable_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"error": "store_unavailable", "detail": "Database unavailable, retry later"},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "detail": "Internal database error"},
        )

    return app


def app_factory() -> FastAPI:
    """Factory for ``uvicorn --factory sync_api.main:app_factory``."""
    return create_app(load_api_settings())


# Module-level application instance used by ``uvicorn sync_api.main:app``.
app = create_app()
