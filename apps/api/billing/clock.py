"""Timezone-safe calendar arithmetic for billing.

All billing dates are calendar dates in the business timezone. An instant that
stands for a calendar date is always pinned to the business-local midday hour,
so its UTC representation stays on the same calendar day in every zone the
business operates in (``2026-02-15`` parsed naively as UTC midnight would be
the 14th in America/Sao_Paulo).

Every function here is pure given its arguments; only :func:`now_utc` reads the
wall clock.
"""
from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Tuple
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from ..settings import settings
from .models import ISO_DATE_PATTERN, BillingCycle


CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.SEMIANNUAL: 6,
    BillingCycle.ANNUAL: 12,
}

ANCHOR_DAY_BOUND = 28


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def business_tz() -> ZoneInfo:
    return _zone(settings.BILLING_TIMEZONE)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def local_date(instant: datetime) -> date:
    """Calendar date of ``instant`` as observed in the business timezone."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(business_tz()).date()


def pin_to_midday(day: date) -> datetime:
    """The canonical instant for a calendar date: business-local midday, in UTC."""
    local = datetime.combine(day, time(hour=settings.BILLING_MIDDAY_HOUR), tzinfo=business_tz())
    return local.astimezone(timezone.utc)


def parse_business_date(value: str) -> datetime:
    """Parse ``YYYY-MM-DD`` into its pinned instant. Raises ``ValueError`` when malformed."""
    text = (value or "").strip()
    if not ISO_DATE_PATTERN.match(text):
        raise ValueError(f"Invalid calendar date: {value!r}")
    return pin_to_midday(date.fromisoformat(text))


def day_bounds(instant: datetime) -> Tuple[datetime, datetime]:
    """UTC ``[start, end)`` of the business-local calendar day containing ``instant``."""
    day = local_date(instant)
    start = datetime.combine(day, time.min, tzinfo=business_tz())
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=business_tz())
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def resolve_anchor_day(instant: datetime, max_day: int = ANCHOR_DAY_BOUND) -> int:
    return min(local_date(instant).day, max_day)


def _check_anchor_day(anchor_day: int) -> None:
    if not 1 <= int(anchor_day) <= ANCHOR_DAY_BOUND:
        raise ValueError(f"anchor_day must be within 1..{ANCHOR_DAY_BOUND}, got {anchor_day}")


def next_billing_date(period_start: datetime, anchor_day: int, cycle: BillingCycle) -> datetime:
    """Advance ``period_start``'s month by one cycle and land on the anchor day.

    The day is ``min(anchor_day, days in the target month)``; callers clamp the
    anchor before calling.
    """
    _check_anchor_day(anchor_day)
    start = local_date(period_start)
    target = start.replace(day=1) + relativedelta(months=CYCLE_MONTHS[BillingCycle(cycle)])
    days_in_month = calendar.monthrange(target.year, target.month)[1]
    return pin_to_midday(target.replace(day=min(anchor_day, days_in_month)))


def period_end(period_start: datetime, cycle: BillingCycle) -> datetime:
    """Same calendar day one cycle later, falling back to the month's last day."""
    start = local_date(period_start)
    return pin_to_midday(start + relativedelta(months=CYCLE_MONTHS[BillingCycle(cycle)]))


def days_overdue(due_date: datetime, as_of: datetime) -> int:
    """Whole calendar days past ``due_date`` at ``as_of``; 0 when not yet due."""
    return max(0, (local_date(as_of) - local_date(due_date)).days)


def is_overdue(due_date: datetime, as_of: datetime) -> bool:
    return local_date(as_of) > local_date(due_date)
