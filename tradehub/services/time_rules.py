"""
Time rules and validation service.
Handles the local business calendar, the daily check-in cutoff and minute math.
"""
import re
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple
import pytz
from ..config import settings

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def local_tz(timezone_str: Optional[str] = None):
    return pytz.timezone(timezone_str or settings.tz_default)


def as_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to timezone-aware UTC.
    Naive values are assumed to already be UTC (SQLite drops tzinfo on read).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (aware, or naive UTC)
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        Local datetime (timezone-aware)
    """
    return as_utc(utc_datetime).astimezone(local_tz(timezone_str))


def local_today(now: datetime, timezone_str: Optional[str] = None) -> date:
    """Calendar day of `now` in the business timezone."""
    return utc_to_local(now, timezone_str).date()


def parse_cutoff(value: Optional[str] = None) -> time:
    """Parse an HH:MM cutoff string (defaults to ATTENDANCE_CUTOFF)."""
    raw = value or settings.attendance_cutoff
    hours, minutes = raw.strip().split(":")
    return time(int(hours), int(minutes))


def is_before_cutoff(now: datetime, cutoff: Optional[time] = None, timezone_str: Optional[str] = None) -> bool:
    """True if the local wall-clock time of `now` is at or before the cutoff."""
    if cutoff is None:
        cutoff = parse_cutoff()
    local_now = utc_to_local(now, timezone_str)
    return local_now.time().replace(tzinfo=None) <= cutoff


def whole_minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes elapsed from start to end, from the exact timestamp difference."""
    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    return max(0, int(seconds // 60))


def format_minutes(total_minutes: Optional[int]) -> str:
    """Format minutes as zero-padded HH:MM, e.g. 425 -> '07:05'."""
    minutes = int(total_minutes or 0)
    return "%02d:%02d" % (minutes // 60, minutes % 60)


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """Parse a strict YYYY-MM-DD string; anything else is treated as absent."""
    if not value or not _ISO_DATE.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def resolve_date_range(
    date_from: Optional[str],
    date_to: Optional[str],
    today: date,
    days: Optional[int] = None,
) -> Tuple[date, date]:
    """
    Inclusive [from, to] range for history queries.
    When either bound is missing or malformed the range falls back to the
    trailing `days` days ending today.
    """
    if days is None:
        days = settings.attendance_history_days
    start = parse_iso_date(date_from)
    end = parse_iso_date(date_to)
    if start is None or end is None:
        return today - timedelta(days=days - 1), today
    return start, end
