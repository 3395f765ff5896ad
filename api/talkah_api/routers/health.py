"""Health-check and readiness probe endpoints.

``/health`` (liveness) is registered under the versioned API prefix.
``/ready`` is a readiness probe at the application root so that
orchestrators can gate traffic independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from talkah_api import __version__
from talkah_api.dependencies import SessionDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Return service health.

    Always answers 200 so load-balancers see the service as alive; the
    ``db`` field reports whether the state store is reachable.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "billing": "enabled" if settings.billing_enabled else "disabled",
    }
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    """Readiness probe: HTTP 503 while the database is unreachable."""
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "version": __version__, "checks": {"db": "unavailable"}},
        )
    return JSONResponse(
        status_code=200,
        content={"status": "ready", "version": __version__, "checks": {"db": "ok"}},
    )
