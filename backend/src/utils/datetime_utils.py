"""
Datetime utilities for consistent timezone handling across the application.

All datetimes are stored naive and interpreted in the facility timezone
(FACILITY_TIMEZONE). Anything entering the services goes through
`to_facility_naive` so comparisons never mix aware and naive values.
"""

import calendar
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from core.config import FACILITY_TIMEZONE

logger = logging.getLogger(__name__)

FACILITY_TZ = ZoneInfo(FACILITY_TIMEZONE)


def facility_now() -> datetime:
    """
    Get current facility-local datetime as a naive value.

    Returns:
        Current wall-clock time in the facility timezone, without tzinfo
    """
    return datetime.now(FACILITY_TZ).replace(tzinfo=None)


def to_facility_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to naive facility-local time.

    Aware datetimes are converted to the facility timezone first; naive
    datetimes are assumed to already be facility-local.

    Args:
        dt: Datetime to normalize

    Returns:
        Naive facility-local datetime, or None if input is None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(FACILITY_TZ).replace(tzinfo=None)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes in [start, end), rounded up so partial minutes count."""
    seconds = (end - start).total_seconds()
    minutes = int(seconds // 60)
    if seconds % 60:
        minutes += 1
    return max(minutes, 0)


def day_bounds(d: date) -> Tuple[datetime, datetime]:
    """Return [midnight, next midnight) for a date."""
    start = datetime.combine(d, datetime.min.time())
    return start, start + timedelta(days=1)


def period_bounds(as_of: date, period: str) -> Tuple[datetime, datetime]:
    """
    Return the [start, end) datetimes of the calendar period containing a date.

    Args:
        as_of: Date inside the period
        period: 'week' (Monday-based), 'month' or 'year'

    Raises:
        ValueError: If period is unknown
    """
    if period == 'week':
        start_date = as_of - timedelta(days=as_of.weekday())
        end_date = start_date + timedelta(days=7)
    elif period == 'month':
        start_date = as_of.replace(day=1)
        days_in_month = calendar.monthrange(as_of.year, as_of.month)[1]
        end_date = start_date + timedelta(days=days_in_month)
    elif period == 'year':
        start_date = date(as_of.year, 1, 1)
        end_date = date(as_of.year + 1, 1, 1)
    else:
        raise ValueError(f"Unknown period: {period}")
    return (
        datetime.combine(start_date, datetime.min.time()),
        datetime.combine(end_date, datetime.min.time()),
    )


def previous_month_range(today: date) -> Tuple[date, date]:
    """First and last day of the month before `today`."""
    first_of_this_month = today.replace(day=1)
    last_of_previous = first_of_this_month - timedelta(days=1)
    return last_of_previous.replace(day=1), last_of_previous
