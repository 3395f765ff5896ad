"""FastAPI application entry-point for the Talkah subscription service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from talkah_engine.errors import (
    IntegrityViolation,
    PlanNotFoundError,
    ProcessorError,
    StateConflictError,
    SubscriptionNotFoundError,
    ValidationError,
)

from talkah_api import __version__
from talkah_api.config import APISettings, PlatformEnv
from talkah_api.dependencies import (
    dispose_engine,
    dispose_subscription_engine,
    get_settings,
    init_engine,
    init_subscription_engine,
    require_service_token,
)
from talkah_api.middleware.logging import RequestLoggingMiddleware
from talkah_api.middleware.prometheus import PrometheusMiddleware
from talkah_api.routers import health, plans, subscriptions, usage, webhooks
from talkah_api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Build the subscription engine and seed the default plan catalog.

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: APISettings = get_settings()

    if settings.structured_logging:
        from talkah_api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from talkah_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    subscription_engine = init_subscription_engine(settings)
    logger.info("Subscription engine initialised (billing %s)", "on" if settings.billing_enabled else "off")

    if settings.auto_seed_plans:
        await subscription_engine.catalog.seed_defaults(settings.stripe_price_ids)

    yield

    dispose_subscription_engine()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Talkah Subscription API",
        description="Plan catalog, usage quotas and subscription lifecycle for Talkah.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Service-Token", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    protected = [Depends(require_service_token)]
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(plans.router, prefix="/api/v1", dependencies=protected)
    app.include_router(subscriptions.router, prefix="/api/v1", dependencies=protected)
    app.include_router(usage.router, prefix="/api/v1", dependencies=protected)
    app.include_router(webhooks.events_router, prefix="/api/v1", dependencies=protected)
    # Authenticated by the Stripe signature instead of the service token.
    app.include_router(webhooks.router, prefix="/api/v1")

    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("Rejected request on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PlanNotFoundError)
    @app.exception_handler(SubscriptionNotFoundError)
    async def not_found_handler(request: Request, exc: PlanNotFoundError | SubscriptionNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StateConflictError)
    async def conflict_handler(request: Request, exc: StateConflictError) -> JSONResponse:
        logger.info("Conflict on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ProcessorError)
    async def processor_error_handler(request: Request, exc: ProcessorError) -> JSONResponse:
        logger.warning("Payment processor failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=504 if exc.timeout else 502,
            content={"detail": str(exc), "retryable": exc.retryable},
        )

    @app.exception_handler(IntegrityViolation)
    async def integrity_handler(request: Request, exc: IntegrityViolation) -> JSONResponse:
        logger.error("Integrity violation on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Subscription state is inconsistent"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn talkah_api.main:app``.
app = create_app()
