"""
Reporting-zone helpers.

Timestamps are stored as naive datetimes in the reporting zone (the
configured REPORT_TIMEZONE, or the server's local zone when unset), so hour
and day buckets line up with what a dashboard user calls "today".
"""
from datetime import datetime, timedelta, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from accesslens.config import settings


def report_zone() -> Optional[tzinfo]:
    if settings.REPORT_TIMEZONE:
        return ZoneInfo(settings.REPORT_TIMEZONE)
    return None


def attach_local(naive: datetime) -> datetime:
    """Interpret a naive datetime as reporting-zone wall time."""
    zone = report_zone()
    if zone is not None:
        return naive.replace(tzinfo=zone)
    return naive.astimezone()


def to_local_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    zone = report_zone()
    local = dt.astimezone(zone) if zone is not None else dt.astimezone()
    return local.replace(tzinfo=None)


def now_local() -> datetime:
    zone = report_zone()
    if zone is not None:
        return datetime.now(zone).replace(tzinfo=None)
    return datetime.now()


def floor_hour(dt: datetime) -> datetime:
    return dt.replace(minute=0, second=0, microsecond=0)


def floor_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


HOUR = timedelta(hours=1)
DAY = timedelta(days=1)
