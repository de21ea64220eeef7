import pytest

from clinicbook.booking.adapters.inbox import InMemoryNotificationSink
from clinicbook.domain.models import Notification


def _notice(recipient: str, title: str) -> Notification:
    return Notification(recipient_id=recipient, title=title, body="")


class TestInMemoryNotificationSink:
    @pytest.mark.asyncio
    async def test_inbox_is_per_recipient_and_newest_first(self) -> None:
        sink = InMemoryNotificationSink()

        await sink.push(_notice("p1", "first"))
        await sink.push(_notice("p2", "other"))
        await sink.push(_notice("p1", "second"))

        assert [e.notification.title for e in sink.inbox("p1")] == ["second", "first"]
        assert [e.notification.title for e in sink.inbox("p2")] == ["other"]
        assert sink.inbox("nobody") == []

    @pytest.mark.asyncio
    async def test_mark_read(self) -> None:
        sink = InMemoryNotificationSink()
        await sink.push(_notice("p1", "first"))
        await sink.push(_notice("p1", "second"))
        oldest = sink.inbox("p1")[-1]

        assert sink.mark_read("p1", oldest.entry_id) is True

        assert [e.notification.title for e in sink.inbox("p1", unread_only=True)] == ["second"]
        assert sink.inbox("p1")[-1].read is True

    @pytest.mark.asyncio
    async def test_mark_read_of_other_recipient_entry(self) -> None:
        sink = InMemoryNotificationSink()
        await sink.push(_notice("p1", "first"))
        entry = sink.inbox("p1")[0]

        assert sink.mark_read("p2", entry.entry_id) is False
        assert sink.inbox("p1")[0].read is False

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        sink = InMemoryNotificationSink()

        await sink.close()

        assert sink.closed is True
