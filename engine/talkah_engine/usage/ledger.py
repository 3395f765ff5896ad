"""Per-period usage counters gated by plan limits.

Counters are keyed by the billing period start, not the calendar month, so
a period rollover always starts from zero while an upgrade inside the same
period keeps what was already used.

Consumption is a single conditional ``UPDATE`` executed under the per-user
lock; the database never holds a value above a finite limit.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talkah_engine.catalog import load_plan
from talkah_engine.changes.effects import complete_pending_change, load_subscription
from talkah_engine.errors import ValidationError
from talkah_engine.models.plan import BillingInterval, Feature, Plan, Unlimited, limit_to_column
from talkah_engine.models.subscription import SubscriptionStatus
from talkah_engine.models.usage import Allowed, ConsumeResult, Denied, DenialReason, FeatureUsage
from talkah_engine.periods import Clock, advance_period, period_key, utcnow
from talkah_engine.state.locks import UserLockRegistry, serialized_transaction
from talkah_engine.state.repository import (
    PendingChangeRepository,
    SubscriptionRepository,
    UsageCounterRepository,
)
from talkah_engine.state.tables import UserSubscriptionTable

logger = logging.getLogger(__name__)


def coerce_feature(feature: Feature | str) -> Feature:
    try:
        return Feature(feature)
    except ValueError:
        raise ValidationError(f"Unknown feature '{feature}'") from None


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise ValidationError(f"Amount must be a positive integer, got {amount!r}")


async def apply_rollover(session: AsyncSession, row: UserSubscriptionTable, now: datetime) -> bool:
    """Advance an expired billing period so that it contains *now*.

    Creates zeroed counters for the new period.  A canceled subscription
    receives no further renewal events, so a due pending change is
    completed here instead.  Returns ``True`` if the period moved.
    """
    if now < row.billing_period_end:
        return False

    if row.status == SubscriptionStatus.CANCELED.value:
        pending = await PendingChangeRepository(session).get_live(row.user_id)
        if pending is not None and pending.effective_date <= now:
            await complete_pending_change(
                session, row, pending, now, note="completed at period end of canceled subscription"
            )

    previous_key = period_key(row.billing_period_start)
    start, end = advance_period(
        row.billing_period_start,
        row.billing_period_end,
        BillingInterval(row.billing_interval),
        now,
    )
    row.billing_period_start = start
    row.billing_period_end = end
    await UsageCounterRepository(session).ensure_period(row.user_id, period_key(start), start, end)
    await SubscriptionRepository(session).touch(row)
    logger.info(
        "Rolled over usage period for user=%s from %s to %s",
        row.user_id,
        previous_key,
        period_key(start),
    )
    return True


async def prepare_current_period(
    session: AsyncSession, user_id: str, now: datetime
) -> tuple[UserSubscriptionTable, Plan, str]:
    """Load the user, roll the period over if needed and make sure counters exist.

    Returns ``(row, effective_plan, period_key)``.
    """
    row = await load_subscription(session, user_id)
    await apply_rollover(session, row, now)
    key = period_key(row.billing_period_start)
    await UsageCounterRepository(session).ensure_period(
        user_id, key, row.billing_period_start, row.billing_period_end
    )
    plan = await load_plan(session, row.plan_id)
    return row, plan, key


class UsageLedger:
    """Quota checks and atomic consumption for metered features.

    Parameters
    ----------
    session_factory:
        Factory producing sessions bound to the state store.
    locks:
        Per-user lock registry shared with the other engine components.
    clock:
        Returns the current UTC time; injectable for tests.
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

    async def remaining(self, user_id: str, feature: Feature | str) -> int | Unlimited:
        """Units left for *feature* in the current period, floored at zero."""
        feature = coerce_feature(feature)
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            _row, plan, key = await prepare_current_period(session, user_id, self._clock())
            counts = await UsageCounterRepository(session).get_counts(user_id, key)
            return plan.limit_for(feature).remaining(counts[feature])

    async def usage(self, user_id: str) -> list[FeatureUsage]:
        """Current-period usage of every feature."""
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            return await current_usage(session, user_id, self._clock())

    async def check(self, user_id: str, feature: Feature | str, amount: int = 1) -> ConsumeResult:
        """Authorise *amount* units without consuming them."""
        feature = coerce_feature(feature)
        _validate_amount(amount)
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            _row, plan, key = await prepare_current_period(session, user_id, self._clock())
            used = (await UsageCounterRepository(session).get_counts(user_id, key))[feature]
            limit = plan.limit_for(feature)
            if limit.allows(used, amount):
                return Allowed(feature=feature, amount=amount, used=used, limit=limit)
            return Denied(feature=feature, amount=amount, used=used, limit=limit, reason=DenialReason.LIMIT_EXCEEDED)

    async def try_consume(self, user_id: str, feature: Feature | str, amount: int = 1) -> ConsumeResult:
        """Consume *amount* units if they fit within the plan limit.

        Returns
        -------
        ConsumeResult
            :class:`Allowed` with the new counter value, or :class:`Denied`
            with the unchanged one.

        Raises
        ------
        ValidationError
            For an unknown feature or an amount below one.
        SubscriptionNotFoundError
            When the user has no subscription row.
        """
        feature = coerce_feature(feature)
        _validate_amount(amount)
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            _row, plan, key = await prepare_current_period(session, user_id, self._clock())
            limit = plan.limit_for(feature)
            counters = UsageCounterRepository(session)
            consumed = await counters.conditional_increment(user_id, key, feature, amount, limit_to_column(limit))
            used = (await counters.get_counts(user_id, key))[feature]

        if consumed:
            logger.debug("Consumed %d %s for user=%s (used=%d)", amount, feature.value, user_id, used)
            return Allowed(feature=feature, amount=amount, used=used, limit=limit)
        logger.info("Denied %d %s for user=%s: used=%d limit=%s", amount, feature.value, user_id, used, limit)
        return Denied(feature=feature, amount=amount, used=used, limit=limit, reason=DenialReason.LIMIT_EXCEEDED)

    async def release(self, user_id: str, feature: Feature | str, amount: int = 1) -> int:
        """Give back units whose side effect failed.  Returns the new counter value.

        Only the current period is touched; the counter never drops below zero.
        """
        feature = coerce_feature(feature)
        _validate_amount(amount)
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            _row, _plan, key = await prepare_current_period(session, user_id, self._clock())
            counters = UsageCounterRepository(session)
            await counters.decrement(user_id, key, feature, amount)
            used = (await counters.get_counts(user_id, key))[feature]
        logger.info("Released %d %s for user=%s (used=%d)", amount, feature.value, user_id, used)
        return used

    async def rollover_if_needed(self, user_id: str) -> bool:
        """Advance the billing period if it has ended.  Idempotent."""
        async with serialized_transaction(self._session_factory, self._locks, user_id) as session:
            row = await load_subscription(session, user_id)
            return await apply_rollover(session, row, self._clock())


async def current_usage(session: AsyncSession, user_id: str, now: datetime) -> list[FeatureUsage]:
    """Build per-feature usage for the current period inside an open session."""
    _row, plan, key = await prepare_current_period(session, user_id, now)
    counts = await UsageCounterRepository(session).get_counts(user_id, key)
    usage: list[FeatureUsage] = []
    for feature in Feature:
        limit = plan.limit_for(feature)
        used = counts[feature]
        usage.append(FeatureUsage(feature=feature, used=used, limit=limit, remaining=limit.remaining(used)))
    return usage
