"""
Timezone utilities for the HealNest booking service.

Everything is stored and compared in UTC. The clinic timezone is only used
to interpret human notions like "morning" or a calendar date.
"""

from datetime import date, datetime, time, timedelta, timezone

import pytz

from app.core.config import settings


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalize ``dt`` to aware UTC.

    Naive values are assumed to already be UTC (that is how SQLite hands
    them back).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_clinic_timezone() -> pytz.BaseTzInfo:
    return pytz.timezone(settings.clinic_timezone)


def to_clinic_time(dt: datetime) -> datetime:
    return ensure_utc(dt).astimezone(get_clinic_timezone())


def clinic_day_bounds(day: date) -> tuple[datetime, datetime]:
    """
    Return the UTC instants bounding ``day`` in the clinic timezone.

    Returns:
        (start_inclusive, end_exclusive) as aware UTC datetimes
    """
    tz = get_clinic_timezone()
    start_local = tz.localize(datetime.combine(day, time.min))
    end_local = tz.localize(datetime.combine(day + timedelta(days=1), time.min))
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)
