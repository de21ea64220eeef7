import datetime as dt
import threading
from collections.abc import Hashable, Iterator, Sequence
from contextlib import contextmanager

from clinicbook.booking.ports import CalendarPlan, TransitionPlan
from clinicbook.domain.exceptions import (
    AppointmentNotFoundError,
    SlotAlreadyBookedError,
    SlotLockedError,
)
from clinicbook.domain.lifecycle import releases_slot
from clinicbook.domain.models import (
    Appointment,
    AppointmentStatus,
    BookedSlot,
    CalendarConfig,
    SlotKey,
    SlotLock,
    Treatment,
)


class _KeyedLocks:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class InMemoryBookingStore:
    """Process-local implementation of the BookingStoreProtocol protocol.

    Reservations serialize on their ``(date, time)`` key and transitions on
    the appointment ID (then on the slot key it releases), so unrelated keys
    never wait on each other. Critical sections never ``await``, which keeps
    them safe to share between threads and event loops.
    """

    def __init__(self) -> None:
        self._appointments: dict[str, Appointment] = {}
        self._booked: dict[SlotKey, BookedSlot] = {}
        self._slot_locks: dict[SlotKey, SlotLock] = {}
        self._calendar: CalendarConfig | None = None
        self._treatments: list[Treatment] = []

        self._slot_mutex = _KeyedLocks()
        self._appointment_mutex = _KeyedLocks()
        self._settings_mutex = threading.Lock()

    async def initialize(self) -> None:
        return None

    async def insert_reservation(self, appointment: Appointment) -> Appointment:
        key = appointment.slot_key
        with self._slot_mutex.hold(key):
            if key in self._slot_locks:
                raise SlotLockedError(key.date, key.time)
            holder = self._booked.get(key)
            if holder is not None:
                if holder.appointment_id == appointment.appointment_id:
                    return self._appointments[holder.appointment_id]
                raise SlotAlreadyBookedError(key.date, key.time)
            # Appointment ids are never reused, even once their slot is released.
            if appointment.appointment_id in self._appointments:
                raise SlotAlreadyBookedError(key.date, key.time)

            self._appointments[appointment.appointment_id] = appointment
            self._booked[key] = BookedSlot(
                date=key.date,
                time=key.time,
                patient_id=appointment.patient_id,
                appointment_id=appointment.appointment_id,
            )
        return appointment

    async def apply_transition(
        self, appointment_id: str, plan: TransitionPlan
    ) -> tuple[Appointment, Appointment]:
        with self._appointment_mutex.hold(appointment_id):
            before = self._appointments.get(appointment_id)
            if before is None:
                raise AppointmentNotFoundError(appointment_id)
            after = plan(before)

            with self._slot_mutex.hold(before.slot_key):
                self._appointments[appointment_id] = after
                if releases_slot(before.status, after.status):
                    holder = self._booked.get(before.slot_key)
                    if holder is not None and holder.appointment_id == appointment_id:
                        del self._booked[before.slot_key]
        return before, after

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        return self._appointments.get(appointment_id)

    async def list_appointments(
        self,
        *,
        date: dt.date | None = None,
        patient_id: str | None = None,
        status: AppointmentStatus | None = None,
        until: dt.date | None = None,
    ) -> list[Appointment]:
        matches = [
            a
            for a in list(self._appointments.values())
            if (date is None or a.date == date)
            and (patient_id is None or a.patient_id == patient_id)
            and (status is None or a.status is status)
            and (until is None or a.date <= until)
        ]
        return sorted(matches, key=lambda a: (a.date, a.time, a.created_at))

    async def booked_times(self, date: dt.date) -> set[dt.time]:
        return {key.time for key in list(self._booked) if key.date == date}

    async def booked_slots(self) -> dict[SlotKey, BookedSlot]:
        return dict(self._booked)

    async def put_slot_lock(self, lock: SlotLock) -> SlotLock:
        with self._slot_mutex.hold(lock.slot_key):
            return self._slot_locks.setdefault(lock.slot_key, lock)

    async def delete_slot_lock(self, date: dt.date, time: dt.time) -> bool:
        key = SlotKey(date, time)
        with self._slot_mutex.hold(key):
            return self._slot_locks.pop(key, None) is not None

    async def list_slot_locks(self, date: dt.date) -> list[SlotLock]:
        locks = [lock for key, lock in list(self._slot_locks.items()) if key.date == date]
        return sorted(locks, key=lambda lock: lock.time)

    async def load_calendar_config(self) -> CalendarConfig | None:
        return self._calendar

    async def update_calendar_config(self, plan: CalendarPlan) -> CalendarConfig:
        with self._settings_mutex:
            self._calendar = plan(self._calendar)
            return self._calendar

    async def replace_treatments(self, treatments: Sequence[Treatment]) -> None:
        with self._settings_mutex:
            self._treatments = list(treatments)

    async def list_treatments(self) -> list[Treatment]:
        return list(self._treatments)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
