import datetime as dt

from clinicbook.domain.models import CalendarConfig
from clinicbook.scheduling.time_helpers import minutes_of_day, time_from_minutes


def _overlaps(start: int, end: int, other_start: int, other_end: int) -> bool:
    """Whether ``[start, end)`` and ``[other_start, other_end)`` share a minute."""
    if other_start >= other_end:
        return False
    return start < other_end and other_start < end


def generate_slots(config: CalendarConfig, date: dt.date) -> list[dt.time]:
    """Candidate slot start times for ``date``, in order.

    Slots step by ``slot_duration_minutes`` from the start of working hours. A
    slot that would run past the end of working hours is dropped, as is any
    slot that touches the break window. Holidays yield no slots.
    """
    if config.is_holiday(date):
        return []

    step = config.slot_duration_minutes
    day_start = minutes_of_day(config.working_hours.start)
    day_end = minutes_of_day(config.working_hours.end)

    break_window = config.break_window
    break_start = minutes_of_day(break_window.start) if break_window else 0
    break_end = minutes_of_day(break_window.end) if break_window else 0

    slots: list[dt.time] = []
    for start in range(day_start, day_end - step + 1, step):
        if break_window and _overlaps(start, start + step, break_start, break_end):
            continue
        slots.append(time_from_minutes(start))
    return slots
