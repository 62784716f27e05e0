from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_SEND_HOUR = 9


def resolve_timezone(zone_name: str | None) -> timezone | ZoneInfo:
    if not zone_name or zone_name.strip().upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(zone_name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _calendar_date(value: date | datetime, zone: timezone | ZoneInfo) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(zone).date()
        return value.date()
    return value


def send_instant(
    due_date: date | datetime,
    day_offset: int,
    *,
    send_hour: int = DEFAULT_SEND_HOUR,
    timezone_name: str | None = None,
) -> datetime:
    """Return the UTC instant at which a reminder ``day_offset`` days from ``due_date`` fires.

    Only the calendar date of ``due_date`` is used; the time of day is always
    ``send_hour:00`` in the business timezone.
    """
    if not 0 <= send_hour <= 23:
        raise ValueError("send_hour must be between 0 and 23")
    zone = resolve_timezone(timezone_name)
    target_day = _calendar_date(due_date, zone) + timedelta(days=day_offset)
    local_instant = datetime.combine(target_day, time(hour=send_hour), tzinfo=zone)
    return local_instant.astimezone(timezone.utc)


def start_of_local_day(now: datetime, *, timezone_name: str | None = None) -> datetime:
    zone = resolve_timezone(timezone_name)
    local_day = now.astimezone(zone).date()
    return datetime.combine(local_day, time.min, tzinfo=zone).astimezone(timezone.utc)
