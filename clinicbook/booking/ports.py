import datetime as dt
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Protocol

from clinicbook.domain.models import (
    Actor,
    Appointment,
    AppointmentStatus,
    BookedSlot,
    CalendarConfig,
    CalendarConfigUpdate,
    Notification,
    SlotKey,
    SlotLock,
    Treatment,
)


class AbstractBookingService(ABC):
    """Abstract base class for the slot reservation engine's public operations."""

    @abstractmethod
    async def get_available_slots(self, date: dt.date) -> list[dt.time]:
        """List the slots of ``date`` that can be reserved right now.

        Args:
            date: The calendar day to inspect.

        Returns:
            Ordered slot start times. Empty on holidays.

        Raises:
            StoreUnavailableError: If the store could not be read.
        """

    @abstractmethod
    async def reserve(
        self, patient_id: str, treatment_label: str, date: dt.date, time: dt.time
    ) -> Appointment:
        """Claim ``(date, time)`` for a new scheduled appointment.

        Args:
            patient_id: Identity id of the patient; must resolve via the identity provider.
            treatment_label: Display label copied onto the appointment.
            date: Day of the slot.
            time: Start time of the slot.

        Returns:
            The created appointment with its assigned ID.

        Raises:
            InvalidRequestError: If an ID or label is blank or ``time`` is not a whole minute.
            UnknownIdentityError: If ``patient_id`` is not a known identity.
            SlotUnavailableError: If the slot is off the calendar grid or already started.
            SlotLockedError: If an administrator lock blocks the slot.
            SlotAlreadyBookedError: If another scheduled appointment holds the slot.
            StoreUnavailableError: If the store kept failing after retries.
        """

    @abstractmethod
    async def transition(
        self,
        appointment_id: str,
        target_status: AppointmentStatus,
        actor: Actor,
        reason: str | None = None,
    ) -> Appointment:
        """Move a scheduled appointment to a terminal status.

        Args:
            appointment_id: The appointment to change.
            target_status: ``completed`` or ``cancelled`` for users; ``missed`` is
                reserved for the engine.
            actor: Who is asking.
            reason: Cancellation reason; a default is supplied when blank.

        Returns:
            The updated appointment.

        Raises:
            AppointmentNotFoundError: If no appointment has this ID.
            ForbiddenError: If the actor lacks the role or ownership required.
            InvalidTransitionError: If the appointment is terminal or already in ``target_status``.
            StoreUnavailableError: If the store kept failing after retries.
        """

    @abstractmethod
    async def bulk_clear(
        self,
        date: dt.date,
        target_status: AppointmentStatus,
        actor: Actor,
        reason: str | None = None,
    ) -> int:
        """Transition every scheduled appointment of ``date`` independently.

        Returns:
            How many appointments were transitioned.

        Raises:
            ForbiddenError: If ``actor`` is not staff.
            InvalidTransitionError: If ``target_status`` is not ``completed`` or ``cancelled``.
        """

    @abstractmethod
    async def lock_slot(
        self, date: dt.date, time: dt.time, actor: Actor, reason: str | None = None
    ) -> SlotLock:
        """Block a slot for future reservations. Idempotent; existing bookings are untouched.

        Raises:
            ForbiddenError: If ``actor`` is not staff.
            InvalidRequestError: If ``time`` is not a whole minute.
        """

    @abstractmethod
    async def unlock_slot(self, date: dt.date, time: dt.time, actor: Actor) -> None:
        """Remove a slot lock. Idempotent."""

    @abstractmethod
    async def get_calendar_config(self) -> CalendarConfig:
        """Return the current calendar configuration."""

    @abstractmethod
    async def update_calendar_config(
        self, update: CalendarConfigUpdate, actor: Actor
    ) -> CalendarConfig:
        """Merge the explicitly set fields of ``update`` into the calendar configuration.

        Raises:
            ForbiddenError: If ``actor`` is not staff.
            InvalidCalendarConfigError: If the merged configuration is invalid.
        """

    @abstractmethod
    async def sweep_missed(self) -> int:
        """Mark every scheduled appointment that has already started as missed.

        Returns:
            How many appointments were marked.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the backing store is reachable and responding."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by this service."""


TransitionPlan = Callable[[Appointment], Appointment]
CalendarPlan = Callable[[CalendarConfig | None], CalendarConfig]


class BookingStoreProtocol(Protocol):
    """Durable store for appointments, the booked-slot index, locks and settings.

    Every mutating method is one atomic unit: it either commits completely or
    leaves no trace.
    """

    async def initialize(self) -> None:
        """Create storage structures if needed."""
        ...

    async def insert_reservation(self, appointment: Appointment) -> Appointment:
        """Atomically check the lock and index for the appointment's key, then write both.

        Replaying an appointment whose ID already holds the key returns the
        stored appointment.

        Raises:
            SlotLockedError: If a lock exists for the key.
            SlotAlreadyBookedError: If the index already holds the key.
        """
        ...

    async def apply_transition(
        self, appointment_id: str, plan: TransitionPlan
    ) -> tuple[Appointment, Appointment]:
        """Atomically load an appointment, apply ``plan`` and persist the result.

        Releases the index entry in the same step when the appointment leaves
        ``scheduled``. Returns ``(before, after)``.

        Raises:
            AppointmentNotFoundError: If no appointment has this ID.
        """
        ...

    async def get_appointment(self, appointment_id: str) -> Appointment | None: ...

    async def list_appointments(
        self,
        *,
        date: dt.date | None = None,
        patient_id: str | None = None,
        status: AppointmentStatus | None = None,
        until: dt.date | None = None,
    ) -> list[Appointment]:
        """List appointments ordered by ``(date, time)``; ``until`` is inclusive."""
        ...

    async def booked_times(self, date: dt.date) -> set[dt.time]: ...

    async def booked_slots(self) -> dict[SlotKey, BookedSlot]:
        """Snapshot of the whole booked-slot index."""
        ...

    async def put_slot_lock(self, lock: SlotLock) -> SlotLock:
        """Create the lock unless one exists; return the stored lock."""
        ...

    async def delete_slot_lock(self, date: dt.date, time: dt.time) -> bool:
        """Remove the lock; return whether one existed."""
        ...

    async def list_slot_locks(self, date: dt.date) -> list[SlotLock]: ...

    async def load_calendar_config(self) -> CalendarConfig | None: ...

    async def update_calendar_config(self, plan: CalendarPlan) -> CalendarConfig:
        """Atomically read, transform and write the singleton calendar configuration."""
        ...

    async def replace_treatments(self, treatments: Sequence[Treatment]) -> None: ...

    async def list_treatments(self) -> list[Treatment]: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


class NotificationSinkProtocol(Protocol):
    """Receives notification intents. Delivery is not awaited by the engine."""

    async def push(self, notification: Notification) -> None:
        """Record or deliver one notification."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


class IdentityProviderProtocol(Protocol):
    """Resolves identity ids to ``(id, role)`` claims."""

    async def resolve(self, identity_id: str) -> Actor | None:
        """Return the identity, or ``None`` if unknown."""
        ...
