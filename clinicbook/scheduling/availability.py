import datetime as dt
from collections.abc import Collection, Sequence

from clinicbook.domain.models import CalendarConfig
from clinicbook.scheduling.slots import generate_slots
from clinicbook.scheduling.time_helpers import slot_start


def available_slots(
    candidates: Sequence[dt.time],
    *,
    date: dt.date,
    booked: Collection[dt.time],
    locked: Collection[dt.time],
    now: dt.datetime,
) -> list[dt.time]:
    """Filter generated candidates down to the bookable subset.

    A candidate survives if nobody holds it, no lock blocks it, and it starts
    strictly after ``now`` (``now`` must be timezone-aware; its zone is the
    clinic's). A slot starting exactly at ``now`` is already in progress.
    """
    tz = now.tzinfo
    if tz is None:
        raise ValueError("now must be timezone-aware")
    return [
        time
        for time in candidates
        if time not in booked and time not in locked and slot_start(date, time, tz) > now
    ]


def check_bookable(
    config: CalendarConfig, date: dt.date, time: dt.time, now: dt.datetime
) -> str | None:
    """Return why ``(date, time)`` cannot be booked, or ``None`` if it is on the grid and ahead."""
    if config.is_holiday(date):
        return "the clinic is closed on this date"
    if time not in generate_slots(config, date):
        return "not a slot on the clinic calendar"
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    if slot_start(date, time, now.tzinfo) <= now:
        return "the slot has already started"
    return None
