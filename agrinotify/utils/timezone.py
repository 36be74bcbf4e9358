from datetime import datetime, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo

from agrinotify.core.config import settings


def get_zoneinfo(tz_name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz_name or settings.DEFAULT_TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC) for storage and comparison.
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def to_local(dt: datetime | None) -> datetime | None:
    """Convert any datetime to the operating timezone (naive values are assumed UTC)."""
    if dt is None:
        return None
    return to_utc_aware(dt).astimezone(get_zoneinfo())


def format_local_time(dt: datetime) -> str:
    """Format an instant as a 12-hour wall-clock string, e.g. '6:55 AM'."""
    local = to_local(dt)
    return local.strftime("%I:%M %p").lstrip("0")
