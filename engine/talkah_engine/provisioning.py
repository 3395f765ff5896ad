"""Creation of the per-user subscription row at signup."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.catalog import FREE_PLAN_ID, load_plan
from talkah_engine.models.subscription import UserSubscriptionState
from talkah_engine.periods import Clock, initial_period, period_key, utcnow
from talkah_engine.state.locks import UserLockRegistry, serialized_transaction
from talkah_engine.state.repository import SubscriptionRepository, UsageCounterRepository, subscription_from_row

logger = logging.getLogger(__name__)


class UserProvisioner:
    """Creates the signup row: ``free`` plan, monthly, active, fresh counters."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: UserLockRegistry,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._clock = clock

    async def provision_user(self, user_id: str, external_customer_ref: str | None = None) -> UserSubscriptionState:
        """Create the user's subscription row if it does not exist yet.

        Idempotent: an existing row is returned unchanged, except that a
        missing customer reference is filled in.
        """
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            repo = SubscriptionRepository(session)
            row = await repo.get(user_id)
            if row is not None:
                if external_customer_ref and not row.external_customer_ref:
                    row.external_customer_ref = external_customer_ref
                    await repo.touch(row)
                return subscription_from_row(row)

            await load_plan(session, FREE_PLAN_ID)
            start, end = initial_period(self._clock())
            row = await repo.create(user_id, FREE_PLAN_ID, start, end, external_customer_ref=external_customer_ref)
            await UsageCounterRepository(session).ensure_period(user_id, period_key(start), start, end)
            logger.info("Provisioned user=%s on %s until %s", user_id, FREE_PLAN_ID, end.isoformat())
            return subscription_from_row(row)
