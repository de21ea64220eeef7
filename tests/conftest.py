import datetime as dt
from zoneinfo import ZoneInfo

import pytest

from clinicbook.booking.adapters.directory import IdentityDirectory
from clinicbook.booking.adapters.inbox import InMemoryNotificationSink
from clinicbook.booking.adapters.memory import InMemoryBookingStore
from clinicbook.booking.service import BookingService
from clinicbook.domain.models import Actor, Role

CLINIC_TZ = ZoneInfo("Asia/Bangkok")
# A Monday; the clinic clock starts before opening time.
CLINIC_DAY = dt.date(2030, 1, 7)
OPENING_MORNING = dt.datetime(2030, 1, 7, 8, 0, tzinfo=CLINIC_TZ)


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += dt.timedelta(**delta)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(OPENING_MORNING)


@pytest.fixture
def patient() -> Actor:
    return Actor(actor_id="patient-1", role=Role.PATIENT, display_name="Ann Example")


@pytest.fixture
def other_patient() -> Actor:
    return Actor(actor_id="patient-2", role=Role.PATIENT, display_name="Bo Example")


@pytest.fixture
def staff() -> Actor:
    return Actor(actor_id="staff-1", role=Role.STAFF, display_name="Front Desk")


@pytest.fixture
def directory(patient: Actor, other_patient: Actor, staff: Actor) -> IdentityDirectory:
    return IdentityDirectory([patient, other_patient, staff])


@pytest.fixture
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def service(
    store: InMemoryBookingStore,
    directory: IdentityDirectory,
    sink: InMemoryNotificationSink,
    clock: FixedClock,
) -> BookingService:
    return BookingService(
        store,
        directory,
        sink,
        clinic_timezone="Asia/Bangkok",
        patient_cancel_lead=dt.timedelta(hours=2),
        store_retry_attempts=3,
        store_retry_wait_seconds=0,
        clock=clock,
    )
