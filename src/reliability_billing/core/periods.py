"""
Billing period arithmetic.

Periods are half-open [start, end) in UTC and advance by calendar months,
never by a fixed number of days.
"""

import calendar
import re
from datetime import date, datetime, time, timezone
from typing import Optional, Tuple, Union

from ..errors import InvalidPeriod

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, date, datetime]) -> datetime:
    """Parse an ISO-8601 string or date into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidPeriod(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Union[str, date, datetime]) -> str:
    """Canonical storage form: UTC ISO-8601 with offset."""
    return parse_timestamp(value).isoformat(timespec="microseconds")


def add_months(dt: datetime, months: int, anchor_day: Optional[int] = None) -> datetime:
    """
    Shift a datetime by whole calendar months.

    The day is clamped to the length of the target month. anchor_day is the
    day the billing cycle was started on, so a cycle anchored on the 31st
    goes Jan 31 -> Feb 28 -> Mar 31 rather than sticking to the 28th.
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = anchor_day or dt.day
    last_day = calendar.monthrange(year, month)[1]
    return dt.replace(year=year, month=month, day=min(day, last_day))


def month_bounds(period: str) -> Tuple[datetime, datetime]:
    """Bounds of a YYYY-MM period as [first of month, first of next month)."""
    match = _MONTH_RE.match(period or "")
    if not match:
        raise InvalidPeriod(f"Period must be YYYY-MM, got {period!r}")

    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidPeriod(f"Invalid month in period {period!r}")

    start = datetime(year, month, 1, tzinfo=timezone.utc)
    return start, add_months(start, 1)


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600
