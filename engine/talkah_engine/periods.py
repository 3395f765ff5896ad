"""Billing period arithmetic.

Periods are anchored on the subscription start, not the calendar month.
Adding months clamps the day to the target month's length, and every
successive boundary is computed from the same anchor so that a period
starting on the 31st does not drift to the 28th after February.
"""

from __future__ import annotations

import calendar
from collections.abc import Callable
from datetime import UTC, datetime

from talkah_engine.models.plan import BillingInterval

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def ensure_utc(moment: datetime) -> datetime:
    """Return *moment* as an aware UTC datetime; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _months_per_interval(interval: BillingInterval) -> int:
    if interval == BillingInterval.YEARLY:
        return 12
    return 1


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_intervals(anchor: datetime, interval: BillingInterval, count: int = 1) -> datetime:
    return add_months(anchor, _months_per_interval(interval) * count)


def initial_period(now: datetime, interval: BillingInterval = BillingInterval.MONTHLY) -> tuple[datetime, datetime]:
    """Return the first period ``[now, now + 1 interval)``."""
    start = ensure_utc(now)
    return start, add_intervals(start, interval)


def advance_period(
    period_start: datetime,
    period_end: datetime,
    interval: BillingInterval,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Advance a period by whole intervals until it contains *now*.

    Returns the bounds unchanged when *now* already lies before
    *period_end*.  The stored start is used as the anchor; if the stored
    end does not line up with it (e.g. after a processor-supplied period),
    the stored end becomes the anchor instead.

    Parameters
    ----------
    period_start:
        Start of the current (possibly expired) period.
    period_end:
        Exclusive end of the current period.
    interval:
        Billing cadence used to compute the following periods.
    now:
        Reference time.
    """
    now = ensure_utc(now)
    start = ensure_utc(period_start)
    end = ensure_utc(period_end)
    if now < end:
        return start, end

    if add_intervals(start, interval) == end:
        anchor, offset = start, 1
    else:
        anchor, offset = end, 0

    while True:
        next_start = add_intervals(anchor, interval, offset)
        next_end = add_intervals(anchor, interval, offset + 1)
        if next_start <= now < next_end:
            return next_start, next_end
        offset += 1


def period_key(period_start: datetime) -> str:
    """Stable counter key for the period beginning at *period_start*."""
    return ensure_utc(period_start).strftime("%Y%m%dT%H%M%SZ")
