import datetime as dt
from zoneinfo import ZoneInfo

from loguru import logger

MINUTES_PER_DAY = 24 * 60


def parse_hhmm(value: str) -> dt.time:
    """Parse ``"09:30"`` → ``time(9, 30)``. Raises ``ValueError`` on anything else."""
    hours, sep, minutes = value.strip().partition(":")
    if not sep or len(minutes) != 2 or not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"Invalid time '{value}'. Expected HH:MM.")
    return dt.time(int(hours), int(minutes))


def format_hhmm(time: dt.time) -> str:
    """Format ``time(9, 0)`` → ``"09:00"``."""
    return time.strftime("%H:%M")


def minutes_of_day(time: dt.time) -> int:
    return time.hour * 60 + time.minute


def time_from_minutes(minutes: int) -> dt.time:
    """Inverse of :func:`minutes_of_day` for ``0 <= minutes < 1440``."""
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise ValueError(f"{minutes} minutes is outside a single day")
    return dt.time(minutes // 60, minutes % 60)


def slot_start(date: dt.date, time: dt.time, tz: dt.tzinfo) -> dt.datetime:
    return dt.datetime.combine(date, time, tzinfo=tz)


def resolve_timezone(name: str) -> dt.tzinfo:
    """Resolve a timezone name, falling back to UTC if invalid."""
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning("Invalid clinic timezone '{}'; defaulting to UTC", name)
        return dt.timezone.utc
