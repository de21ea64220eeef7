import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Annotated, NamedTuple

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    field_validator,
    model_validator,
)


def _whole_minute(value: dt.time) -> dt.time:
    if value.second or value.microsecond:
        raise ValueError("time must fall on a whole minute (HH:MM)")
    if value.tzinfo is not None:
        raise ValueError("time must be a naive clinic-local time of day")
    return value


ClockTime = Annotated[dt.time, AfterValidator(_whole_minute)]


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MISSED = "missed"

    @property
    def is_terminal(self) -> bool:
        return self is not AppointmentStatus.SCHEDULED


class Role(str, Enum):
    PATIENT = "patient"
    STAFF = "staff"
    # Never issued by the identity provider; used for engine-initiated transitions.
    SYSTEM = "system"


class Actor(BaseModel):
    """The caller of a mutating operation, as claimed by the identity provider."""

    model_config = ConfigDict(frozen=True)

    actor_id: str
    role: Role
    display_name: str = ""

    @property
    def is_staff(self) -> bool:
        return self.role is Role.STAFF


SYSTEM_ACTOR = Actor(actor_id="system", role=Role.SYSTEM)


class SlotKey(NamedTuple):
    """The mutual-exclusion key of a reservation."""

    date: dt.date
    time: dt.time


class TimeWindow(BaseModel):
    """A time-of-day interval ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: ClockTime
    end: ClockTime

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end


class Holiday(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: dt.date
    label: str = "Holiday"


class CalendarConfig(BaseModel):
    """Working hours, break, slot granularity and holidays of the clinic calendar."""

    model_config = ConfigDict(frozen=True)

    working_hours: TimeWindow = TimeWindow(start=dt.time(9, 0), end=dt.time(17, 0))
    break_window: TimeWindow | None = TimeWindow(start=dt.time(12, 0), end=dt.time(13, 0))
    slot_duration_minutes: PositiveInt = 30
    holidays: tuple[Holiday, ...] = ()

    @field_validator("holidays")
    @classmethod
    def _one_holiday_per_date(cls, value: tuple[Holiday, ...]) -> tuple[Holiday, ...]:
        by_date = {holiday.date: holiday for holiday in value}
        return tuple(sorted(by_date.values(), key=lambda h: h.date))

    @model_validator(mode="after")
    def _check_windows(self) -> "CalendarConfig":
        if self.working_hours.start >= self.working_hours.end:
            raise ValueError("working hours must start before they end")
        if self.break_window is not None:
            if self.break_window.start > self.break_window.end:
                raise ValueError("break window must not end before it starts")
            if not self.working_hours.contains(self.break_window):
                raise ValueError("break window must lie within working hours")
        return self

    def is_holiday(self, date: dt.date) -> bool:
        return any(holiday.date == date for holiday in self.holidays)


class CalendarConfigUpdate(BaseModel):
    """A partial calendar update. Only fields explicitly passed are applied.

    Passing ``break_window=None`` removes the break; omitting it keeps the
    current one.
    """

    model_config = ConfigDict(frozen=True)

    working_hours: TimeWindow | None = None
    break_window: TimeWindow | None = None
    slot_duration_minutes: PositiveInt | None = None
    holidays: tuple[Holiday, ...] | None = None

    def apply_to(self, config: CalendarConfig) -> CalendarConfig:
        """Merge into ``config``; raises ``pydantic.ValidationError`` if the result is invalid."""
        changes = self.model_dump(exclude_unset=True)
        return CalendarConfig.model_validate({**config.model_dump(), **changes})


class Treatment(BaseModel):
    """A bookable service. Only its label is copied onto appointments."""

    model_config = ConfigDict(frozen=True)

    treatment_id: str = Field(pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    display_label: str = Field(min_length=1)
    active: bool = True
    duration_minutes: PositiveInt | None = None
    price: Decimal | None = Field(default=None, ge=0)
    sort_order: int | None = None


class ReservationRequest(BaseModel):
    """A request to claim one slot for a patient."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    patient_id: str = Field(min_length=1)
    treatment_label: str = Field(min_length=1)
    date: dt.date
    time: ClockTime

    @property
    def slot_key(self) -> SlotKey:
        return SlotKey(self.date, self.time)


class Appointment(BaseModel):
    """An appointment record. Never deleted; terminal records form the history."""

    model_config = ConfigDict(frozen=True)

    appointment_id: str
    patient_id: str
    patient_display_name: str = ""
    treatment_label: str
    date: dt.date
    time: ClockTime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    created_at: dt.datetime
    cancel_reason: str | None = None

    @property
    def slot_key(self) -> SlotKey:
        return SlotKey(self.date, self.time)

    def starts_at(self, tz: dt.tzinfo) -> dt.datetime:
        return dt.datetime.combine(self.date, self.time, tzinfo=tz)


class BookedSlot(BaseModel):
    """Entry of the booked-slot index: who holds a ``(date, time)`` key right now."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    time: ClockTime
    patient_id: str
    appointment_id: str

    @property
    def slot_key(self) -> SlotKey:
        return SlotKey(self.date, self.time)


class SlotLock(BaseModel):
    """An administrator block on a slot, independent of bookings."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    time: ClockTime
    reason: str | None = None
    created_by: str | None = None
    created_at: dt.datetime | None = None

    @property
    def slot_key(self) -> SlotKey:
        return SlotKey(self.date, self.time)


class Notification(BaseModel):
    """A notification intent addressed to one recipient."""

    model_config = ConfigDict(frozen=True)

    recipient_id: str
    title: str
    body: str
