"""Middleware components for the Talkah API."""

from __future__ import annotations

from talkah_api.middleware.json_formatter import JSONFormatter
from talkah_api.middleware.logging import RequestLoggingMiddleware
from talkah_api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
