"""Prometheus metrics middleware and application counters.

Exposes standard RED metrics (Rate, Errors, Duration) for HTTP requests
plus counters for the subscription flows: reconciler outcomes, quota
decisions and plan change outcomes.

Path normalisation collapses user ids (``/users/u-123/usage`` ->
``/users/{id}/usage``) to prevent unbounded label cardinality.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "talkah_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "talkah_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

RECONCILER_EVENTS_TOTAL = Counter(
    "talkah_reconciler_events_total",
    "Processor events handled by the reconciler, by event type and outcome",
    ["event_type", "outcome"],
)

USAGE_DECISIONS_TOTAL = Counter(
    "talkah_usage_decisions_total",
    "Quota consumption decisions by feature and decision",
    ["feature", "decision"],
)

PLAN_CHANGES_TOTAL = Counter(
    "talkah_plan_changes_total",
    "Plan change requests by outcome",
    ["outcome"],
)

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

# User ids are opaque strings, so the segment after /users/ is always collapsed.
_USER_SEGMENT = re.compile(r"/users/[^/]+")

_PATH_PARAM_PATTERNS = [
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    path = _USER_SEGMENT.sub("/users/{id}", path)
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()

        HTTP_REQUEST_DURATION.labels(
            method=method,
            path=normalised,
        ).observe(duration)

        return response
