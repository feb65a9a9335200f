"""Business-timezone helpers shared by the rollup and dashboard readers

All "day", weekday and hour bucketing goes through these functions so that
DailyMetric rows and dashboard histograms agree on where a day starts.
"""
from datetime import date, datetime, time, timedelta, timezone

from doctrack.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_business(value: datetime) -> datetime:
    return ensure_utc(value).astimezone(settings.business_tz)


def business_day(value: datetime) -> date:
    """Calendar day of an instant in the business timezone"""
    return to_business(value).date()


def business_day_start(day: date) -> datetime:
    """UTC instant at which a business-timezone day begins"""
    local_start = datetime.combine(day, time.min, tzinfo=settings.business_tz)
    return local_start.astimezone(timezone.utc)


def day_range(start: date, end: date) -> list:
    """Inclusive list of days from start to end"""
    days = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days
