"""Appointment lifecycle rules.

``scheduled`` is the only non-terminal status. From it an appointment moves
exactly once to ``completed`` (staff), ``cancelled`` (staff, or the owning
patient outside the cancellation lead time) or ``missed`` (the engine itself,
once the slot has started). Every transition out of ``scheduled`` releases the
slot key; the store applies that release in the same atomic step.
"""

import datetime as dt

from clinicbook.domain.exceptions import ForbiddenError, InvalidTransitionError
from clinicbook.domain.models import Actor, Appointment, AppointmentStatus, Role

STAFF_CANCEL_REASON = "Cancelled by the clinic"
PATIENT_CANCEL_REASON = "Cancelled by the patient"

TERMINAL_STATUSES = frozenset(status for status in AppointmentStatus if status.is_terminal)


def releases_slot(before: AppointmentStatus, after: AppointmentStatus) -> bool:
    return before is AppointmentStatus.SCHEDULED and after is not AppointmentStatus.SCHEDULED


def plan_transition(
    appointment: Appointment,
    target: AppointmentStatus,
    actor: Actor,
    *,
    now: dt.datetime,
    tz: dt.tzinfo,
    patient_cancel_lead: dt.timedelta | None = None,
    reason: str | None = None,
) -> Appointment:
    """Validate a transition and return the updated appointment.

    Pure: reads nothing but its arguments, so a store can call it while it
    holds the appointment's key.

    Raises:
        ForbiddenError: If the actor lacks the role or ownership required.
        InvalidTransitionError: If ``appointment`` is terminal, ``target`` equals
            the current status, or ``target`` is ``scheduled``.
    """
    if actor.role is Role.PATIENT and actor.actor_id != appointment.patient_id:
        raise ForbiddenError("patients may only change their own appointments", actor.actor_id)

    if appointment.status.is_terminal:
        raise InvalidTransitionError(
            f"appointment is already {appointment.status.value}", appointment.appointment_id
        )
    if target not in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"cannot move a {appointment.status.value} appointment to {target.value}",
            appointment.appointment_id,
        )

    if target is AppointmentStatus.COMPLETED:
        if not actor.is_staff:
            raise ForbiddenError("only staff may complete appointments", actor.actor_id)
        return appointment.model_copy(update={"status": target})

    if target is AppointmentStatus.MISSED:
        if actor.role is not Role.SYSTEM:
            raise ForbiddenError("missed appointments are recorded by the system", actor.actor_id)
        if appointment.starts_at(tz) >= now:
            raise InvalidTransitionError(
                "appointment has not started yet", appointment.appointment_id
            )
        return appointment.model_copy(update={"status": target})

    if actor.role is Role.SYSTEM:
        raise ForbiddenError("the system only records missed appointments", actor.actor_id)
    if actor.role is Role.PATIENT and patient_cancel_lead is not None:
        if appointment.starts_at(tz) - now < patient_cancel_lead:
            raise ForbiddenError(
                f"self-service cancellation closes {patient_cancel_lead} before the appointment",
                actor.actor_id,
            )

    cancel_reason = (reason or "").strip()
    if not cancel_reason:
        cancel_reason = STAFF_CANCEL_REASON if actor.is_staff else PATIENT_CANCEL_REASON
    return appointment.model_copy(update={"status": target, "cancel_reason": cancel_reason})
