"""Access logging for the Talkah API.

One record per request on the ``talkah_api.access`` logger, carrying a
``request`` dict that :class:`~talkah_api.middleware.json_formatter.JSONFormatter`
emits as a nested object.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("talkah_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

# Service tokens and Stripe signatures must never reach the log sink.
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-api-key", "x-service-token", "stripe-signature"})
_MASK = "***"

# Orchestrator probes and scrapes would drown out real traffic at INFO.
_PROBE_PATHS = frozenset({"/api/v1/health", "/ready", "/metrics"})


def _masked_headers(request: Request) -> dict[str, str]:
    return {key: _MASK if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in _PROBE_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, route, status and latency of every request.

    The correlation id comes from the ``X-Correlation-ID`` request header
    (a UUID-4 is generated when absent), is exposed to handlers as
    ``request.state.correlation_id`` and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            route = request.scope.get("route")
            path = request.url.path
            entry: dict[str, Any] = {
                "method": request.method,
                "path": path,
                "route": getattr(route, "path", None),
                "query": request.url.query or None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "headers": _masked_headers(request),
            }
            logger.log(_level_for(path, status_code), "request completed", extra={"request": entry})
