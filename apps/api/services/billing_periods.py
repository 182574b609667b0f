"""Calendar arithmetic for billing periods."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Optional

from services.errors import InvalidInputError


CYCLE_MONTHS = {"monthly": 1, "yearly": 12}


def as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today(now: Optional[datetime] = None) -> date:
    """Calendar day used for daily usage rows."""
    return as_utc(now).date()


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month.

    Jan 31 + 1 month is Feb 28 (Feb 29 in leap years). Time of day and tzinfo
    are preserved.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def validate_billing_cycle(billing_cycle: str) -> str:
    cycle = str(billing_cycle or "").strip().lower()
    if cycle not in CYCLE_MONTHS:
        raise InvalidInputError(
            f'Invalid billing cycle "{billing_cycle}". Must be "monthly" or "yearly"',
            billing_cycle=billing_cycle,
        )
    return cycle


def advance_period(start: datetime, billing_cycle: str) -> datetime:
    """Return the end of a period that starts at ``start``."""
    return add_months(start, CYCLE_MONTHS[validate_billing_cycle(billing_cycle)])
