"""Billing cycle arithmetic.

Parses provider interval strings ("1 month", "12 months", "1 year", "14 days")
and computes calendar-correct next charge dates. Month and year steps clamp to
the last day of the target month, so a cycle anchored on Jan 31 renews on
Feb 28 (or 29), and a yearly cycle anchored on Feb 29 renews on Feb 28.
"""

import calendar
import re
from datetime import date, datetime, timedelta, timezone
from typing import Tuple, Union

INTERVAL_UNITS = ("day", "week", "month", "year")

_INTERVAL_PATTERN = re.compile(r"^(\d+)?\s*(day|week|month|year)s?$")


def parse_interval(interval: str) -> Tuple[int, str]:
    """Parse a provider interval string.

    Args:
        interval: Interval such as "1 month", "3 months", "1 year", "7 days"

    Returns:
        (count, unit) with unit one of day, week, month, year

    Raises:
        ValueError: If the interval is empty or unsupported

    Examples:
        >>> parse_interval("1 month")
        (1, 'month')
        >>> parse_interval("12 months")
        (12, 'month')
    """
    if not interval or not isinstance(interval, str):
        raise ValueError("Interval must be a non-empty string")

    match = _INTERVAL_PATTERN.match(interval.strip().lower())
    if not match:
        raise ValueError(
            f"Unsupported interval: '{interval}'. "
            "Supported formats: '<n> days', '<n> weeks', '<n> months', '<n> years'"
        )

    count_str, unit = match.groups()
    count = int(count_str) if count_str else 1
    if count <= 0:
        raise ValueError(f"Interval count must be positive: '{interval}'")
    return count, unit


def validate_interval(interval: str) -> bool:
    try:
        parse_interval(interval)
        return True
    except ValueError:
        return False


def add_months(anchor: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor.day, last_day))


def add_interval(anchor: date, interval: str) -> date:
    """Advance a date by one billing interval."""
    count, unit = parse_interval(interval)
    if unit == "day":
        return anchor + timedelta(days=count)
    if unit == "week":
        return anchor + timedelta(weeks=count)
    if unit == "month":
        return add_months(anchor, count)
    return add_months(anchor, 12 * count)


def to_utc_date(value: Union[str, datetime, date]) -> date:
    """UTC calendar date of a timestamp (naive datetimes are taken as UTC)."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def next_cycle_date(paid_at: Union[str, datetime, date], interval: str) -> date:
    """Start date of the recurring subscription that follows a first payment.

    Args:
        paid_at: Payment timestamp (paidAt, or createdAt when paidAt is absent)
        interval: Offer interval

    Returns:
        Same day next cycle, clamped to the end of the month

    Examples:
        >>> next_cycle_date("2025-01-10T09:00:00+00:00", "1 month")
        datetime.date(2025, 2, 10)
        >>> next_cycle_date("2025-01-31T09:00:00+00:00", "1 month")
        datetime.date(2025, 2, 28)
    """
    return add_interval(to_utc_date(paid_at), interval)
