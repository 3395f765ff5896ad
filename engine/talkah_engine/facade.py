"""Read-only query facade over subscription state and usage."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.catalog import load_plan
from talkah_engine.changes.effects import load_subscription
from talkah_engine.models.subscription import PendingPlanChange
from talkah_engine.models.usage import PeriodUsage
from talkah_engine.models.view import SubscriptionView
from talkah_engine.periods import Clock, utcnow
from talkah_engine.state.locks import UserLockRegistry, serialized_transaction
from talkah_engine.state.repository import (
    PendingChangeRepository,
    UsageCounterRepository,
    pending_from_row,
    subscription_from_row,
)
from talkah_engine.usage.ledger import current_usage

logger = logging.getLogger(__name__)


class SubscriptionQueryFacade:
    """Aggregates plan, status, pending change and usage for display.

    Holds no state of its own.  The billing period is rolled over first,
    so a view never shows counters of an expired period.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: UserLockRegistry,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._clock = clock

    async def get_subscription_view(self, user_id: str) -> SubscriptionView:
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            usage = await current_usage(session, user_id, self._clock())
            state = subscription_from_row(await load_subscription(session, user_id))
            plan = await load_plan(session, state.plan_id)
            pending_row = await PendingChangeRepository(session).get_live(user_id)
            return SubscriptionView(
                user_id=user_id,
                plan=plan,
                status=state.status,
                billing_interval=state.billing_interval,
                billing_period=state.billing_period,
                pending_change=pending_from_row(pending_row) if pending_row is not None else None,
                usage=usage,
            )

    async def get_usage_history(self, user_id: str, limit: int = 12) -> list[PeriodUsage]:
        """Counters of the most recent billing periods, newest first."""
        async with self._session_factory() as session:
            await load_subscription(session, user_id)
            return await UsageCounterRepository(session).history(user_id, limit=limit)

    async def get_plan_change_history(self, user_id: str, limit: int = 20) -> list[PendingPlanChange]:
        """Pending, completed and cancelled plan changes, newest first."""
        async with self._session_factory() as session:
            await load_subscription(session, user_id)
            rows = await PendingChangeRepository(session).history(user_id, limit=limit)
            return [pending_from_row(row) for row in rows]
