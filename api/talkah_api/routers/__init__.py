"""API router modules for the Talkah subscription service."""

from __future__ import annotations

from talkah_api.routers import health, plans, subscriptions, usage, webhooks

__all__ = [
    "health",
    "plans",
    "subscriptions",
    "usage",
    "webhooks",
]
