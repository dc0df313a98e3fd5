"""Timezone-aware send-time helpers.

Digests go out at a fixed local hour (8 AM by default) in each subscriber's
own timezone. Stored times are naive UTC; these helpers convert at the edges.
"""

import calendar
import logging
from datetime import date, datetime, timedelta, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from releasewatch.config import settings
from releasewatch.utils.time import utcnow

logger = logging.getLogger(__name__)

FREQUENCIES = ("daily", "weekly", "monthly")

LOOKBACK_DAYS = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
}


def get_zone(name: Optional[str]) -> Optional[ZoneInfo]:
    """ZoneInfo for an IANA name, or None if the name is unknown."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _local_now(zone: ZoneInfo, now: Optional[datetime]) -> datetime:
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt_timezone.utc)
    return now.astimezone(zone)


def _check_frequency(frequency: str) -> None:
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown digest frequency: {frequency}")


def lookback_days(frequency: str) -> int:
    """Days of history a digest of this frequency covers."""
    _check_frequency(frequency)
    return LOOKBACK_DAYS[frequency]


def local_hour(timezone: str, now: Optional[datetime] = None) -> Optional[int]:
    """Current hour in the given timezone, or None if the timezone is unknown."""
    zone = get_zone(timezone)
    if zone is None:
        return None
    return _local_now(zone, now).hour


def is_target_hour(
    timezone: str, target_hour: Optional[int] = None, now: Optional[datetime] = None
) -> bool:
    """
    True when it is currently ``target_hour`` in ``timezone``.

    An unknown timezone counts as eligible so a bad setting never strands an item.
    """
    if target_hour is None:
        target_hour = settings.target_send_hour
    hour = local_hour(timezone, now)
    if hour is None:
        logger.warning(f"Unknown timezone {timezone!r}; treating item as eligible")
        return True
    return hour == target_hour


def should_send_today(frequency: str, timezone: str, now: Optional[datetime] = None) -> bool:
    """Whether today (local) is a delivery day: every day, Mondays, or the 1st."""
    _check_frequency(frequency)
    zone = get_zone(timezone) or ZoneInfo("UTC")
    local = _local_now(zone, now)
    if frequency == "daily":
        return True
    if frequency == "weekly":
        return local.weekday() == 0
    return local.day == 1


def calculate_scheduled_time(
    frequency: str,
    timezone: str,
    target_hour: Optional[int] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Next delivery slot at ``target_hour`` local time.

    - daily: today if before the target hour, else tomorrow
    - weekly: the next Monday (today if it is Monday before the hour)
    - monthly: the next 1st (today if it is the 1st before the hour)

    Args:
        frequency: daily/weekly/monthly
        timezone: Subscriber's IANA timezone (unknown names fall back to UTC)
        target_hour: Local hour to send at (defaults to config)
        now: Reference time (naive UTC, defaults to now)

    Returns:
        Naive UTC datetime
    """
    _check_frequency(frequency)
    if target_hour is None:
        target_hour = settings.target_send_hour

    zone = get_zone(timezone)
    if zone is None:
        logger.warning(f"Unknown timezone {timezone!r}; scheduling in UTC")
        zone = ZoneInfo("UTC")

    local = _local_now(zone, now)
    before_hour = local.hour < target_hour
    target = local.date()

    if frequency == "daily":
        if not before_hour:
            target += timedelta(days=1)
    elif frequency == "weekly":
        days_ahead = (7 - local.weekday()) % 7
        if days_ahead == 0 and not before_hour:
            days_ahead = 7
        target += timedelta(days=days_ahead)
    else:
        if not (local.day == 1 and before_hour):
            if local.month == 12:
                target = date(local.year + 1, 1, 1)
            else:
                target = date(local.year, local.month + 1, 1)

    slot = datetime(target.year, target.month, target.day, target_hour, tzinfo=zone)
    return slot.astimezone(dt_timezone.utc).replace(tzinfo=None)

def calculate_reminder_time(
    timezone: str,
    send_day: Optional[int] = None,
    target_hour: Optional[int] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Next monthly reminder slot: ``send_day`` of the month at ``target_hour`` local.

    This month's slot is used while it is still ahead, otherwise next month's.
    Days past the end of a short month clamp to its last day.

    Returns:
        Naive UTC datetime
    """
    send_day = send_day or settings.reminder_send_day
    if target_hour is None:
        target_hour = settings.target_send_hour

    zone = get_zone(timezone)
    if zone is None:
        logger.warning(f"Unknown timezone {timezone!r}; scheduling in UTC")
        zone = ZoneInfo("UTC")

    local = _local_now(zone, now)
    year, month = local.year, local.month
    day = min(send_day, calendar.monthrange(year, month)[1])
    if (local.day, local.hour) >= (day, target_hour):
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        day = min(send_day, calendar.monthrange(year, month)[1])

    slot = datetime(year, month, day, target_hour, tzinfo=zone)
    return slot.astimezone(dt_timezone.utc).replace(tzinfo=None)



def target_calendar_date(scheduled_for: datetime, timezone: str) -> date:
    """Local calendar date of a (naive UTC) scheduled time."""
    zone = get_zone(timezone) or ZoneInfo("UTC")
    return _local_now(zone, scheduled_for).date()
