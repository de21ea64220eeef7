import datetime as dt


class BookingError(Exception):
    """Base exception for all booking engine errors."""


class ConflictError(BookingError):
    """Raised when a slot cannot be claimed; the caller should re-pick a slot."""

    def __init__(self, message: str, date: dt.date, time: dt.time) -> None:
        self.date = date
        self.time = time
        super().__init__(message)


class SlotLockedError(ConflictError):
    """Raised when an administrator lock blocks the requested slot."""

    def __init__(self, date: dt.date, time: dt.time) -> None:
        super().__init__(f"Slot {date} {time:%H:%M} is locked", date, time)


class SlotAlreadyBookedError(ConflictError):
    """Raised when another scheduled appointment already holds the slot."""

    def __init__(self, date: dt.date, time: dt.time) -> None:
        super().__init__(f"Slot {date} {time:%H:%M} is already booked", date, time)


class SlotUnavailableError(ConflictError):
    """Raised when the slot is not on the calendar grid or has already started."""

    def __init__(self, date: dt.date, time: dt.time, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Slot {date} {time:%H:%M} is not bookable: {reason}", date, time)


class NotFoundError(BookingError):
    """Base for lookups of unknown records."""


class AppointmentNotFoundError(NotFoundError):
    def __init__(self, appointment_id: str) -> None:
        self.appointment_id = appointment_id
        super().__init__(f"Appointment not found: {appointment_id}")


class UnknownIdentityError(NotFoundError):
    def __init__(self, identity_id: str) -> None:
        self.identity_id = identity_id
        super().__init__(f"Unknown identity: {identity_id}")


class ForbiddenError(BookingError):
    """Raised when the actor lacks the role or ownership an action requires."""

    def __init__(self, reason: str, actor_id: str | None = None) -> None:
        self.reason = reason
        self.actor_id = actor_id
        super().__init__(f"Forbidden: {reason}")


class InvalidTransitionError(BookingError):
    """Raised for transitions out of a terminal status or into the same status."""

    def __init__(self, reason: str, appointment_id: str | None = None) -> None:
        self.reason = reason
        self.appointment_id = appointment_id
        super().__init__(f"Invalid transition: {reason}")


class InvalidCalendarConfigError(BookingError):
    """Raised when a calendar update would break the working-hours invariants."""


class StoreUnavailableError(BookingError):
    """Raised when the durable store fails or times out; safe to retry."""


class NotificationDeliveryError(BookingError):
    """Raised by notification sinks when a record cannot be delivered."""


class InvalidRequestError(BookingError):
    """Raised when caller input is malformed, e.g. a blank patient ID or a time with seconds."""
