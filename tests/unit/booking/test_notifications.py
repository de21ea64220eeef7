import asyncio
import datetime as dt

import pytest

from clinicbook.booking.adapters.inbox import InMemoryNotificationSink
from clinicbook.booking.notifications import (
    NotificationDispatcher,
    booking_cancelled,
    booking_confirmed,
)
from clinicbook.domain.exceptions import NotificationDeliveryError
from clinicbook.domain.models import Appointment, AppointmentStatus, Notification

APPOINTMENT = Appointment(
    appointment_id="a1",
    patient_id="p1",
    treatment_label="Cleaning",
    date=dt.date(2030, 1, 7),
    time=dt.time(9, 30),
    created_at=dt.datetime(2030, 1, 6, tzinfo=dt.timezone.utc),
)


class BrokenSink:
    def __init__(self) -> None:
        self.closed = False

    async def push(self, notification: Notification) -> None:
        raise NotificationDeliveryError("endpoint down")

    async def close(self) -> None:
        self.closed = True


class SlowSink(InMemoryNotificationSink):
    async def push(self, notification: Notification) -> None:
        await asyncio.sleep(0.01)
        await super().push(notification)


class TestIntentBuilders:
    def test_confirmation(self) -> None:
        notice = booking_confirmed(APPOINTMENT)

        assert notice.recipient_id == "p1"
        assert notice.title == "Appointment confirmed"
        assert "Cleaning" in notice.body
        assert "2030-01-07" in notice.body
        assert "09:30" in notice.body

    def test_cancellation_carries_reason(self) -> None:
        cancelled = APPOINTMENT.model_copy(
            update={"status": AppointmentStatus.CANCELLED, "cancel_reason": "Clinic closed"}
        )

        notice = booking_cancelled(cancelled)

        assert notice.title == "Appointment cancelled"
        assert notice.body.endswith("Reason: Clinic closed")


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_flush_waits_for_delivery(self) -> None:
        sink = SlowSink()
        dispatcher = NotificationDispatcher(sink)

        dispatcher.dispatch(booking_confirmed(APPOINTMENT))
        assert sink.inbox("p1") == []
        await dispatcher.flush()

        assert len(sink.inbox("p1")) == 1

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self) -> None:
        sink = BrokenSink()
        dispatcher = NotificationDispatcher(sink)

        dispatcher.dispatch(booking_confirmed(APPOINTMENT))
        await dispatcher.close()

        assert sink.closed is True

    @pytest.mark.asyncio
    async def test_flush_with_nothing_pending(self) -> None:
        dispatcher = NotificationDispatcher(InMemoryNotificationSink())

        await dispatcher.flush()
