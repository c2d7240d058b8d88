"""Scheduler clock: day keys and the daily run window."""

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from app.core.config import settings


def _local(now: datetime, tz_name: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name))


def day_key(now: datetime, tz_name: str | None = None) -> str:
    """
    Canonical YYYY-MM-DD for the calendar day containing `now` in the scheduler timezone.

    Naive datetimes are treated as UTC.
    """
    return _local(now, tz_name or settings.SCHEDULER_TIMEZONE).strftime("%Y-%m-%d")


def is_window_open(
    now: datetime,
    tz_name: str | None = None,
    start_hour: int | None = None,
    end_hour: int | None = None,
) -> bool:
    """
    Whether the daily run window is open at `now`.

    The window opens at `start_hour` local time and stays open until `end_hour`
    (exclusive) or end of day when no end is configured.
    """
    start = settings.DAILY_RUN_HOUR if start_hour is None else start_hour
    end = settings.DAILY_RUN_END_HOUR if end_hour is None else end_hour
    local = _local(now, tz_name or settings.SCHEDULER_TIMEZONE)
    if local.hour < start:
        return False
    if end is not None and local.hour >= end:
        return False
    return True


def day_bounds(key: str, tz_name: str | None = None) -> tuple[datetime, datetime]:
    """UTC [start, end) of the local day named by `key`."""
    tz = ZoneInfo(tz_name or settings.SCHEDULER_TIMEZONE)
    day = datetime.strptime(key, "%Y-%m-%d").date()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
