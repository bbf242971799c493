"""
Date and timestamp helpers.

All timestamps are timezone-aware UTC datetimes in memory and ISO-8601
strings with a ``Z`` suffix at the storage boundary. Calendar dates are
``YYYY-MM-DD`` strings.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, NamedTuple, Optional
from zoneinfo import ZoneInfo

DAY = timedelta(days=1)


class WeekBoundary(NamedTuple):
    """Mon-Fri reporting week in the team timezone."""

    start: datetime  # Monday 00:00 local
    end: datetime  # Friday 23:59:59.999999 local
    dates: List[str]  # Monday..Friday as YYYY-MM-DD


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def utc_date(value: datetime) -> str:
    """Calendar date (UTC) of a timestamp."""
    return ensure_utc(value).date().isoformat()


def parse_date(value: str) -> date:
    """Parse a YYYY-MM-DD string."""
    return date.fromisoformat(value)


def midnight_utc(day: str) -> datetime:
    """Midnight UTC at the start of a calendar date."""
    return datetime.combine(parse_date(day), time.min, tzinfo=timezone.utc)


def date_range(since: datetime, end_day: str) -> List[str]:
    """
    Every calendar date from ``since``'s UTC date through ``end_day`` inclusive.

    Walks one day at a time; an empty list when ``since`` falls after
    ``end_day``.
    """
    current = ensure_utc(since).date()
    last = parse_date(end_day)
    days = []
    while current <= last:
        days.append(current.isoformat())
        current += DAY
    return days


def local_date(now: Optional[datetime] = None, tz: str = "America/New_York") -> str:
    """Today's date in the given timezone."""
    now = ensure_utc(now or utcnow())
    return now.astimezone(ZoneInfo(tz)).date().isoformat()


def week_boundary(report_time: datetime, tz: str = "America/New_York") -> WeekBoundary:
    """
    Compute the Mon-Fri week a weekly report covers.

    A run on Monday reports the previous week. Any other day reports the
    current week. The weekday is evaluated in the team timezone, not UTC.
    """
    zone = ZoneInfo(tz)
    local = ensure_utc(report_time).astimezone(zone)
    weekday = local.weekday()  # Monday == 0

    offset = -7 if weekday == 0 else -weekday
    monday = local.date() + timedelta(days=offset)
    friday = monday + timedelta(days=4)

    start = datetime.combine(monday, time.min, tzinfo=zone)
    end = datetime.combine(friday, time.max, tzinfo=zone)
    dates = [(monday + timedelta(days=i)).isoformat() for i in range(5)]
    return WeekBoundary(start=start, end=end, dates=dates)


def age_days(detected_at: datetime, now: datetime) -> int:
    """Whole days elapsed since ``detected_at``, floored, never negative."""
    elapsed = ensure_utc(now) - ensure_utc(detected_at)
    return max(elapsed // DAY, 0)


def format_age(days: int) -> str:
    if days <= 0:
        return "today"
    if days == 1:
        return "1 day"
    return f"{days} days"


def clamp_future(value: datetime, now: datetime, max_skew_seconds: int) -> tuple[datetime, bool]:
    """
    Clamp a timestamp that lies further in the future than the skew tolerance.

    Returns:
        (timestamp, clamped) where ``clamped`` tells whether ``now`` was substituted
    """
    value = ensure_utc(value)
    now = ensure_utc(now)
    if value - now > timedelta(seconds=max_skew_seconds):
        return now, True
    return value, False
