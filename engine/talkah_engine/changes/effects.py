"""State mutations shared by the state machine, the ledger and the reconciler.

Every helper works inside a session the caller opened under the per-user
lock and leaves the version bump and commit to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from talkah_engine.catalog import FREE_PLAN_ID
from talkah_engine.errors import SubscriptionNotFoundError
from talkah_engine.models.plan import BillingInterval
from talkah_engine.models.subscription import PendingChangeStatus
from talkah_engine.periods import ensure_utc
from talkah_engine.state.repository import PendingChangeRepository, SubscriptionRepository
from talkah_engine.state.tables import PendingPlanChangeTable, UserSubscriptionTable

logger = logging.getLogger(__name__)


async def load_subscription(session: AsyncSession, user_id: str) -> UserSubscriptionTable:
    row = await SubscriptionRepository(session).get(user_id)
    if row is None:
        raise SubscriptionNotFoundError(user_id)
    return row


def is_newer(candidate: datetime, marker: datetime | None) -> bool:
    """Whether an event at *candidate* may overwrite a field group stamped *marker*.

    Equal timestamps win so that a confirmation and its own echo event are
    both accepted.
    """
    return marker is None or ensure_utc(candidate) >= ensure_utc(marker)


def normalize_interval(plan_id: str, interval: BillingInterval) -> BillingInterval:
    """The free tier has no billing cadence; it is always tracked as monthly."""
    if plan_id == FREE_PLAN_ID:
        return BillingInterval.MONTHLY
    return interval


def set_plan(
    row: UserSubscriptionTable,
    plan_id: str,
    interval: BillingInterval,
    as_of: datetime,
) -> bool:
    """Write the plan/interval field group if *as_of* is not older than its marker.

    Returns ``True`` when the row changed.
    """
    if not is_newer(as_of, row.plan_as_of):
        return False
    interval = normalize_interval(plan_id, interval)
    changed = row.plan_id != plan_id or row.billing_interval != interval.value
    row.plan_id = plan_id
    row.billing_interval = interval.value
    row.plan_as_of = as_of
    return changed


def set_status(row: UserSubscriptionTable, status: str, as_of: datetime) -> bool:
    """Write the status field group if *as_of* is not older than its marker."""
    if not is_newer(as_of, row.status_as_of):
        return False
    changed = row.status != status
    row.status = status
    row.status_as_of = as_of
    return changed


def set_period(row: UserSubscriptionTable, start: datetime, end: datetime) -> bool:
    """Move the period bounds forward.

    A period that ended at or before the stored start describes the past
    and is ignored.
    """
    if ensure_utc(end) <= ensure_utc(row.billing_period_start):
        return False
    changed = row.billing_period_start != start or row.billing_period_end != end
    row.billing_period_start = start
    row.billing_period_end = end
    return changed


async def complete_pending_change(
    session: AsyncSession,
    row: UserSubscriptionTable,
    pending: PendingPlanChangeTable,
    now: datetime,
    as_of: datetime | None = None,
    note: str | None = None,
) -> bool:
    """Make a pending change effective and mark it completed.

    *as_of* is the time of the processor event that made the change due.
    When the plan group already holds newer processor state the plan is
    left alone and the pending change is cancelled instead.  Without
    *as_of* (lazy completion at period end) the plan is always written.

    Returns ``True`` when the change took effect.
    """
    repo = PendingChangeRepository(session)
    if as_of is not None and not is_newer(as_of, row.plan_as_of):
        await repo.resolve(pending, PendingChangeStatus.CANCELLED, now, note="superseded by newer processor state")
        logger.info(
            "Pending %s for user=%s superseded: plan state as of %s is newer than %s",
            pending.change_type,
            row.user_id,
            row.plan_as_of,
            as_of,
        )
        return False

    stamp = as_of or now
    row.plan_id = pending.target_plan_id
    row.billing_interval = normalize_interval(
        pending.target_plan_id, BillingInterval(pending.target_billing_interval)
    ).value
    if is_newer(stamp, row.plan_as_of):
        row.plan_as_of = stamp
    await repo.resolve(pending, PendingChangeStatus.COMPLETED, now, note=note)
    logger.info(
        "Completed pending %s for user=%s -> %s/%s",
        pending.change_type,
        row.user_id,
        pending.target_plan_id,
        pending.target_billing_interval,
    )
    return True
