"""Wall clock and quota period boundaries.

All timestamps handled by the service are naive datetimes in UTC, matching
how they are stored in the database.
"""

import calendar
from datetime import datetime, timezone
from typing import Optional

CALENDAR_MONTH = "calendar_month"
ANNIVERSARY = "anniversary"
RESET_POLICIES = (CALENDAR_MONTH, ANNIVERSARY)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Clock backed by the system wall clock."""

    def now(self) -> datetime:
        return utcnow()


def _add_months(year: int, month: int, months: int):
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _clamped(anchor: datetime, year: int, month: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return anchor.replace(year=year, month=month, day=min(anchor.day, last_day))


def start_of_next_period(
    now: datetime,
    policy: str = CALENDAR_MONTH,
    anchor: Optional[datetime] = None,
) -> datetime:
    """Return the start of the quota period following ``now``.

    Args:
        now: Current time (naive UTC).
        policy: ``calendar_month`` resets at 00:00 on the 1st of each month;
            ``anniversary`` resets on the anchor's day-of-month and time,
            clamped to the last day of shorter months.
        anchor: Billing anchor for the anniversary policy. Defaults to ``now``.

    Returns:
        A datetime strictly after ``now``.

    Raises:
        ValueError: If the policy is unknown.
    """
    if policy == CALENDAR_MONTH:
        year, month = _add_months(now.year, now.month, 1)
        return datetime(year, month, 1)

    if policy == ANNIVERSARY:
        anchor = anchor or now
        candidate = _clamped(anchor, now.year, now.month)
        offset = 0
        while candidate <= now:
            offset += 1
            year, month = _add_months(now.year, now.month, offset)
            candidate = _clamped(anchor, year, month)
        return candidate

    raise ValueError(f"Unknown quota reset policy: {policy!r}")
