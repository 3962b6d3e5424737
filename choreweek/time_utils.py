from __future__ import annotations

import os
from datetime import date, datetime, tzinfo, timedelta
from zoneinfo import ZoneInfo


def _configured_tz() -> tzinfo:
    """Return the timezone configured for the application."""
    tz_name = os.getenv("CHOREWEEK_TZ")
    if tz_name:
        return ZoneInfo(tz_name)
    system_tz = datetime.now().astimezone().tzinfo
    return system_tz if system_tz is not None else ZoneInfo("UTC")


def get_now() -> datetime:
    """Return the current time in the configured timezone.

    Uses the ``CHOREWEEK_TZ`` environment variable if set, otherwise
    defaults to the system timezone.
    """
    return datetime.now(_configured_tz())


def parse_datetime(value: str) -> datetime:
    """Parse an ISO formatted datetime string.

    A trailing ``Z`` is accepted for UTC.  If ``value`` lacks timezone
    information the configured timezone is applied, otherwise the value is
    converted into it.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_tz(datetime.fromisoformat(value))


def ensure_tz(dt: datetime | None) -> datetime | None:
    """Ensure ``dt`` is timezone-aware using the configured timezone."""
    if dt is None:
        return None

    tz = _configured_tz()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    if dt.tzinfo == tz:
        return dt
    return dt.astimezone(tz)


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(dt: datetime) -> datetime:
    """Return the last representable instant of ``dt``'s day."""
    return dt.replace(hour=23, minute=59, second=59, microsecond=999999)


def week_start(dt: datetime | date) -> datetime:
    """Return Monday 00:00 of the week containing ``dt``.

    Sundays belong to the week that started on the preceding Monday.
    """
    if not isinstance(dt, datetime):
        dt = datetime(dt.year, dt.month, dt.day)
    dt = ensure_tz(dt)
    return start_of_day(dt) - timedelta(days=dt.weekday())


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = dt.day
    while True:
        try:
            return dt.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def cron_weekday(dt: datetime | date) -> int:
    """Return the weekday numbered the cron way (0=Sunday..6=Saturday)."""
    return (dt.weekday() + 1) % 7
