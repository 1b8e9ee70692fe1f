"""
Time rules service.
Handles UTC normalization, project-local dates, week bounds and hour totals.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple
import pytz
from ..config import settings


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.
    Naive values (e.g. read back from SQLite) are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def resolve_timezone(timezone_str: Optional[str]) -> str:
    return timezone_str or settings.tz_default


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert local datetime to UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "America/Chicago")

    Returns:
        UTC datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
        if local_datetime.tzinfo is None:
            local_dt = tz.localize(local_datetime)
        else:
            local_dt = local_datetime.astimezone(tz)
        return local_dt.astimezone(pytz.UTC)
    except pytz.UnknownTimeZoneError:
        return local_datetime.replace(tzinfo=pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (timezone-aware or naive UTC)
        timezone_str: Timezone string (e.g., "America/Chicago")

    Returns:
        Local datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
        return ensure_utc(utc_datetime).astimezone(tz)
    except pytz.UnknownTimeZoneError:
        return ensure_utc(utc_datetime)


def local_date(utc_datetime: datetime, timezone_str: Optional[str]) -> date:
    """Calendar day of a UTC instant as seen in the project's timezone."""
    return utc_to_local(utc_datetime, resolve_timezone(timezone_str)).date()


def combine_date_time(date_val: date, time_val: time, timezone_str: str) -> datetime:
    """
    Combine a local date and time into a UTC datetime.

    Args:
        date_val: Date object
        time_val: Time object
        timezone_str: Timezone string

    Returns:
        UTC datetime (timezone-aware)
    """
    naive_dt = datetime.combine(date_val, time_val)
    return local_to_utc(naive_dt, timezone_str)


def week_bounds(day: date) -> Tuple[date, date]:
    """
    Monday-start, Sunday-end week containing the given day.

    Args:
        day: Any date in the week

    Returns:
        (monday, sunday)
    """
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def compute_total_hours(
    clock_in_at: datetime,
    clock_out_at: datetime,
    lunch_minutes: int = 0,
) -> float:
    """
    Hours between clock-in and clock-out minus lunch, rounded to 4 decimals.
    Never negative.
    """
    total_seconds = (ensure_utc(clock_out_at) - ensure_utc(clock_in_at)).total_seconds()
    work_seconds = total_seconds - (lunch_minutes or 0) * 60
    return max(0.0, round(work_seconds / 3600, 4))
