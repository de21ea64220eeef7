import asyncio
import datetime as dt
import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from loguru import logger
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clinicbook.booking.notifications import (
    NotificationDispatcher,
    booking_cancelled,
    booking_confirmed,
)
from clinicbook.booking.ports import (
    AbstractBookingService,
    BookingStoreProtocol,
    IdentityProviderProtocol,
    NotificationSinkProtocol,
)
from clinicbook.domain.exceptions import (
    AppointmentNotFoundError,
    BookingError,
    ConflictError,
    ForbiddenError,
    InvalidCalendarConfigError,
    InvalidRequestError,
    InvalidTransitionError,
    SlotUnavailableError,
    StoreUnavailableError,
    UnknownIdentityError,
)
from clinicbook.domain.lifecycle import plan_transition
from clinicbook.domain.models import (
    SYSTEM_ACTOR,
    Actor,
    Appointment,
    AppointmentStatus,
    CalendarConfig,
    CalendarConfigUpdate,
    Holiday,
    ReservationRequest,
    SlotLock,
    Treatment,
)
from clinicbook.scheduling.availability import available_slots, check_bookable
from clinicbook.scheduling.slots import generate_slots
from clinicbook.scheduling.time_helpers import format_hhmm, resolve_timezone

T = TypeVar("T")

QUEUE_CLEAR_TARGETS = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})


def _new_appointment_id() -> str:
    return uuid.uuid4().hex


def _coerce_status(value: AppointmentStatus | str) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise InvalidTransitionError(f"unknown status '{value}'") from None


def _require_staff(actor: Actor, action: str) -> None:
    if not actor.is_staff:
        raise ForbiddenError(f"only staff may {action}", actor.actor_id)


class BookingService(AbstractBookingService):
    """Slot reservation engine: availability, reservations and the appointment lifecycle.

    All mutation goes through the store's atomic operations; this class adds
    identity and slot validation, role checks, bounded retries of
    ``StoreUnavailableError`` and notification intents.
    """

    def __init__(
        self,
        store: BookingStoreProtocol,
        identities: IdentityProviderProtocol,
        notification_sink: NotificationSinkProtocol,
        *,
        clinic_timezone: str = "Asia/Bangkok",
        default_calendar: CalendarConfig | None = None,
        patient_cancel_lead: dt.timedelta | None = dt.timedelta(hours=2),
        store_retry_attempts: int = 3,
        store_retry_wait_seconds: float = 0.05,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._store = store
        self._identities = identities
        self._notifier = NotificationDispatcher(notification_sink)
        self._tz = resolve_timezone(clinic_timezone)
        self._default_calendar = default_calendar or CalendarConfig()
        self._cancel_lead = patient_cancel_lead
        self._retry_attempts = store_retry_attempts
        self._retry_wait = store_retry_wait_seconds
        self._clock = clock

    @property
    def notifications(self) -> NotificationDispatcher:
        return self._notifier

    @property
    def timezone(self) -> dt.tzinfo:
        return self._tz

    def _now(self) -> dt.datetime:
        """Current clinic-local time. An injected clock must return aware datetimes."""
        if self._clock is None:
            return dt.datetime.now(self._tz)
        return self._clock().astimezone(self._tz)

    async def _call_store(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except BookingError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"{operation} failed: {exc}") from exc

    async def _in_store(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run one store call, retrying it only while the store is unavailable."""

        def _log_retry(state: RetryCallState) -> None:
            logger.warning(
                "Store unavailable during {} (attempt {}/{}), retrying",
                operation,
                state.attempt_number,
                self._retry_attempts,
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_wait, max=2.0),
            retry=retry_if_exception_type(StoreUnavailableError),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                result = await self._call_store(operation, call)
        return result

    async def startup(self) -> None:
        """Prepare the store and seed the calendar configuration if it has none."""
        await self._in_store("initialize store", self._store.initialize)
        config = await self._in_store(
            "seed calendar config",
            lambda: self._store.update_calendar_config(
                lambda current: current or self._default_calendar
            ),
        )
        logger.info(
            "Booking engine started: hours {}-{}, {} min slots, timezone {}",
            format_hhmm(config.working_hours.start),
            format_hhmm(config.working_hours.end),
            config.slot_duration_minutes,
            self._tz,
        )

    # -- availability -------------------------------------------------------

    async def get_calendar_config(self) -> CalendarConfig:
        config = await self._in_store("load calendar config", self._store.load_calendar_config)
        return config or self._default_calendar

    async def get_available_slots(self, date: dt.date) -> list[dt.time]:
        config = await self.get_calendar_config()
        candidates = generate_slots(config, date)
        if not candidates:
            return []

        booked = await self._in_store("read booked slots", lambda: self._store.booked_times(date))
        locks = await self._in_store("read slot locks", lambda: self._store.list_slot_locks(date))
        return available_slots(
            candidates,
            date=date,
            booked=booked,
            locked={lock.time for lock in locks},
            now=self._now(),
        )

    # -- reservations -------------------------------------------------------

    async def reserve(
        self, patient_id: str, treatment_label: str, date: dt.date, time: dt.time
    ) -> Appointment:
        try:
            request = ReservationRequest(
                patient_id=patient_id, treatment_label=treatment_label, date=date, time=time
            )
        except ValidationError as exc:
            raise InvalidRequestError(f"invalid reservation request: {exc}") from exc

        patient = await self._identities.resolve(request.patient_id)
        if patient is None:
            raise UnknownIdentityError(request.patient_id)

        now = self._now()
        config = await self.get_calendar_config()
        problem = check_bookable(config, request.date, request.time, now)
        if problem is not None:
            logger.info(
                "Reservation rejected for {} {}: {}",
                request.date,
                format_hhmm(request.time),
                problem,
            )
            raise SlotUnavailableError(request.date, request.time, problem)

        appointment = Appointment(
            appointment_id=_new_appointment_id(),
            patient_id=patient.actor_id,
            patient_display_name=patient.display_name,
            treatment_label=request.treatment_label,
            date=request.date,
            time=request.time,
            status=AppointmentStatus.SCHEDULED,
            created_at=now,
        )
        logger.info(
            "Reserving slot {} {} for patient {}",
            request.date,
            format_hhmm(request.time),
            patient.actor_id,
        )

        try:
            created = await self._in_store(
                "reserve", lambda: self._store.insert_reservation(appointment)
            )
        except ConflictError as exc:
            logger.info("Reservation rejected: {}", exc)
            raise

        logger.info("Appointment created: id={}", created.appointment_id)
        self._notifier.dispatch(booking_confirmed(created))
        return created

    # -- lifecycle ----------------------------------------------------------

    async def transition(
        self,
        appointment_id: str,
        target_status: AppointmentStatus | str,
        actor: Actor,
        reason: str | None = None,
    ) -> Appointment:
        target = _coerce_status(target_status)
        now = self._now()

        def plan(current: Appointment) -> Appointment:
            return plan_transition(
                current,
                target,
                actor,
                now=now,
                tz=self._tz,
                patient_cancel_lead=self._cancel_lead,
                reason=reason,
            )

        before, after = await self._in_store(
            "transition", lambda: self._store.apply_transition(appointment_id, plan)
        )
        logger.info(
            "Appointment {} moved {} -> {} by {} {}",
            appointment_id,
            before.status.value,
            after.status.value,
            actor.role.value,
            actor.actor_id,
        )

        if after.status is AppointmentStatus.CANCELLED:
            self._notifier.dispatch(booking_cancelled(after))
        return after

    async def bulk_clear(
        self,
        date: dt.date,
        target_status: AppointmentStatus | str,
        actor: Actor,
        reason: str | None = None,
    ) -> int:
        target = _coerce_status(target_status)
        _require_staff(actor, "clear the queue")
        if target not in QUEUE_CLEAR_TARGETS:
            raise InvalidTransitionError(
                f"the queue can only be cleared to completed or cancelled, not {target.value}"
            )

        queue = await self._in_store(
            "list day queue",
            lambda: self._store.list_appointments(date=date, status=AppointmentStatus.SCHEDULED),
        )
        results = await asyncio.gather(
            *(self.transition(a.appointment_id, target, actor, reason) for a in queue),
            return_exceptions=True,
        )

        cleared = 0
        for appointment, result in zip(queue, results):
            if isinstance(result, BookingError):
                logger.warning(
                    "Queue clear skipped appointment {}: {}", appointment.appointment_id, result
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                cleared += 1

        logger.info(
            "Cleared {} of {} scheduled appointment(s) on {} to {}",
            cleared,
            len(queue),
            date,
            target.value,
        )
        return cleared

    async def sweep_missed(self) -> int:
        now = self._now()
        scheduled = await self._in_store(
            "list overdue appointments",
            lambda: self._store.list_appointments(
                status=AppointmentStatus.SCHEDULED, until=now.date()
            ),
        )
        overdue = [a for a in scheduled if a.starts_at(self._tz) < now]

        marked = 0
        for appointment in overdue:
            try:
                await self.transition(
                    appointment.appointment_id, AppointmentStatus.MISSED, SYSTEM_ACTOR
                )
            except BookingError as exc:
                logger.warning(
                    "Could not mark appointment {} as missed: {}", appointment.appointment_id, exc
                )
                continue
            marked += 1

        if marked:
            logger.info("Marked {} appointment(s) as missed", marked)
        return marked

    # -- slot locks ---------------------------------------------------------

    async def lock_slot(
        self, date: dt.date, time: dt.time, actor: Actor, reason: str | None = None
    ) -> SlotLock:
        _require_staff(actor, "lock slots")
        try:
            lock = SlotLock(
                date=date,
                time=time,
                reason=(reason or "").strip() or None,
                created_by=actor.actor_id,
                created_at=self._now(),
            )
        except ValidationError as exc:
            raise InvalidRequestError(f"invalid slot lock: {exc}") from exc
        stored = await self._in_store("lock slot", lambda: self._store.put_slot_lock(lock))
        logger.info("Slot {} {} locked by {}", date, format_hhmm(time), actor.actor_id)
        return stored

    async def unlock_slot(self, date: dt.date, time: dt.time, actor: Actor) -> None:
        _require_staff(actor, "unlock slots")
        removed = await self._in_store(
            "unlock slot", lambda: self._store.delete_slot_lock(date, time)
        )
        if removed:
            logger.info("Slot {} {} unlocked by {}", date, format_hhmm(time), actor.actor_id)

    async def list_slot_locks(self, date: dt.date) -> list[SlotLock]:
        return await self._in_store("list slot locks", lambda: self._store.list_slot_locks(date))

    # -- calendar configuration ---------------------------------------------

    async def _change_calendar(
        self,
        operation: str,
        actor: Actor,
        make_update: Callable[[CalendarConfig], CalendarConfigUpdate],
    ) -> CalendarConfig:
        _require_staff(actor, "change the clinic calendar")

        def plan(current: CalendarConfig | None) -> CalendarConfig:
            config = current or self._default_calendar
            try:
                return make_update(config).apply_to(config)
            except ValidationError as exc:
                raise InvalidCalendarConfigError(str(exc)) from exc

        updated = await self._in_store(
            operation, lambda: self._store.update_calendar_config(plan)
        )
        logger.info("Calendar config changed by {} ({})", actor.actor_id, operation)
        return updated

    async def update_calendar_config(
        self, update: CalendarConfigUpdate, actor: Actor
    ) -> CalendarConfig:
        return await self._change_calendar("update calendar config", actor, lambda _: update)

    async def add_holiday(
        self, date: dt.date, actor: Actor, label: str = "Holiday"
    ) -> CalendarConfig:
        holiday = Holiday(date=date, label=label.strip() or "Holiday")
        return await self._change_calendar(
            "add holiday",
            actor,
            lambda config: CalendarConfigUpdate(
                holidays=tuple(h for h in config.holidays if h.date != date) + (holiday,)
            ),
        )

    async def remove_holiday(self, date: dt.date, actor: Actor) -> CalendarConfig:
        return await self._change_calendar(
            "remove holiday",
            actor,
            lambda config: CalendarConfigUpdate(
                holidays=tuple(h for h in config.holidays if h.date != date)
            ),
        )

    # -- treatments ---------------------------------------------------------

    async def set_treatments(self, treatments: Sequence[Treatment], actor: Actor) -> None:
        _require_staff(actor, "edit treatments")
        ids = [t.treatment_id for t in treatments]
        if len(set(ids)) != len(ids):
            raise InvalidRequestError("treatment ids must be unique")
        await self._in_store("replace treatments", lambda: self._store.replace_treatments(treatments))
        logger.info("Treatment catalogue replaced by {} ({} entries)", actor.actor_id, len(ids))

    async def list_treatments(self, *, active_only: bool = True) -> list[Treatment]:
        treatments = await self._in_store("list treatments", self._store.list_treatments)
        if active_only:
            treatments = [t for t in treatments if t.active]
        return sorted(
            treatments,
            key=lambda t: (t.sort_order is None, t.sort_order or 0, t.display_label.casefold()),
        )

    # -- queries ------------------------------------------------------------

    async def get_appointment(self, appointment_id: str, actor: Actor) -> Appointment:
        appointment = await self._in_store(
            "get appointment", lambda: self._store.get_appointment(appointment_id)
        )
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        if not actor.is_staff and appointment.patient_id != actor.actor_id:
            raise ForbiddenError("patients may only view their own appointments", actor.actor_id)
        return appointment

    async def list_patient_appointments(self, patient_id: str, actor: Actor) -> list[Appointment]:
        """A patient's full history, newest first."""
        if not actor.is_staff and actor.actor_id != patient_id:
            raise ForbiddenError("patients may only view their own history", actor.actor_id)
        history = await self._in_store(
            "list patient appointments",
            lambda: self._store.list_appointments(patient_id=patient_id),
        )
        return sorted(history, key=lambda a: (a.date, a.time), reverse=True)

    async def list_day_queue(
        self, date: dt.date, actor: Actor, *, status: AppointmentStatus | None = None
    ) -> list[Appointment]:
        _require_staff(actor, "view the day queue")
        return await self._in_store(
            "list day queue", lambda: self._store.list_appointments(date=date, status=status)
        )

    # -- lifecycle of the service itself ------------------------------------

    async def health_check(self) -> bool:
        return await self._store.health_check()

    async def close(self) -> None:
        await self._notifier.close()
        await self._store.close()
