"""
Date arithmetic shared by the scoring engine and the recurring scheduler.

Everything here is pure: callers pass the reference instant (``now`` or
``today``) explicitly so results are reproducible in tests. Month and year
steps follow calendar rules through ``dateutil.relativedelta``, so the 31st
of January rolls to the last day of February rather than overflowing.
"""

import math
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta
from django.utils import timezone


SECONDS_PER_DAY = 24 * 60 * 60

# One billing cycle per frequency code.
FREQUENCY_STEPS = {
    'DAILY': relativedelta(days=1),
    'WEEKLY': relativedelta(weeks=1),
    'MONTHLY': relativedelta(months=1),
    'QUARTERLY': relativedelta(months=3),
    'YEARLY': relativedelta(years=1),
}


def current_time() -> datetime:
    """Timezone-aware "now" used as the default reference instant."""
    return timezone.now()


def current_date() -> date:
    """Today's date in the active timezone."""
    return timezone.localdate()


def _aware(value: datetime) -> datetime:
    if timezone.is_naive(value):
        return timezone.make_aware(value)
    return value


def days_until(deadline: datetime, now: Optional[datetime] = None) -> int:
    """
    Whole days from ``now`` until ``deadline``, rounded up.

    A deadline 3 hours away counts as 1 day; a deadline exactly at ``now``
    counts as 0; a deadline in the past yields 0 or a negative number.
    """
    now = _aware(now or current_time())
    delta = _aware(deadline) - now
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def is_past(deadline: datetime, now: Optional[datetime] = None) -> bool:
    """True when the deadline lies strictly before ``now``."""
    now = _aware(now or current_time())
    return _aware(deadline) < now


def is_due_today_or_past(deadline: datetime, now: Optional[datetime] = None) -> bool:
    """True when the deadline falls on today's local date or earlier."""
    now = _aware(now or current_time())
    deadline = _aware(deadline)
    if deadline < now:
        return True
    return timezone.localtime(deadline).date() == timezone.localtime(now).date()


def roll_forward(current: date, frequency: str) -> date:
    """
    Advance ``current`` by exactly one unit of ``frequency``.

    Raises:
        KeyError: if ``frequency`` is not a known frequency code.
    """
    return current + FREQUENCY_STEPS[frequency]


def month_bounds(today: Optional[date] = None) -> Tuple[date, date]:
    """Return (first day of this month, first day of next month)."""
    today = today or current_date()
    start = today.replace(day=1)
    return start, start + relativedelta(months=1)


def window_end(today: Optional[date] = None, days: int = 7) -> date:
    """Inclusive end of an N-day look-ahead window starting today."""
    today = today or current_date()
    return today + timedelta(days=days)
