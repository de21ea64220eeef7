import datetime as dt
import itertools
from collections import defaultdict

from pydantic import BaseModel, ConfigDict

from clinicbook.domain.models import Notification


class InboxEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_id: int
    notification: Notification
    received_at: dt.datetime
    read: bool = False


class InMemoryNotificationSink:
    """Keeps notifications in a per-recipient inbox with read/unread state.

    Entries are newest first, the way a patient's notification list is shown.
    """

    def __init__(self) -> None:
        self._inboxes: dict[str, list[InboxEntry]] = defaultdict(list)
        self._ids = itertools.count(1)
        self.closed: bool = False

    async def push(self, notification: Notification) -> None:
        entry = InboxEntry(
            entry_id=next(self._ids),
            notification=notification,
            received_at=dt.datetime.now(dt.timezone.utc),
        )
        self._inboxes[notification.recipient_id].insert(0, entry)

    def inbox(self, recipient_id: str, *, unread_only: bool = False) -> list[InboxEntry]:
        entries = self._inboxes.get(recipient_id, [])
        return [entry for entry in entries if not (unread_only and entry.read)]

    def mark_read(self, recipient_id: str, entry_id: int) -> bool:
        """Mark one entry read; return whether it was found."""
        entries = self._inboxes.get(recipient_id, [])
        for index, entry in enumerate(entries):
            if entry.entry_id == entry_id:
                entries[index] = entry.model_copy(update={"read": True})
                return True
        return False

    async def close(self) -> None:
        self.closed = True
