import asyncio

from loguru import logger

from clinicbook.booking.ports import NotificationSinkProtocol
from clinicbook.domain.models import Appointment, Notification
from clinicbook.scheduling.time_helpers import format_hhmm


def booking_confirmed(appointment: Appointment) -> Notification:
    return Notification(
        recipient_id=appointment.patient_id,
        title="Appointment confirmed",
        body=(
            f"Your {appointment.treatment_label} appointment is booked for "
            f"{appointment.date.isoformat()} at {format_hhmm(appointment.time)}."
        ),
    )


def booking_cancelled(appointment: Appointment) -> Notification:
    return Notification(
        recipient_id=appointment.patient_id,
        title="Appointment cancelled",
        body=(
            f"Your {appointment.treatment_label} appointment on "
            f"{appointment.date.isoformat()} at {format_hhmm(appointment.time)} "
            f"was cancelled. Reason: {appointment.cancel_reason}"
        ),
    )


class NotificationDispatcher:
    """Hands notifications to a sink without making the caller wait.

    Delivery failures are logged and dropped; they never reach the operation
    that produced the notification.
    """

    def __init__(self, sink: NotificationSinkProtocol) -> None:
        self._sink = sink
        self._pending: set[asyncio.Task[None]] = set()

    def dispatch(self, notification: Notification) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._sink.push(notification)
        except Exception as exc:
            logger.warning(
                "Notification '{}' to {} not delivered: {}",
                notification.title,
                notification.recipient_id,
                exc,
            )

    async def flush(self) -> None:
        """Wait for every notification dispatched so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.flush()
        await self._sink.close()
