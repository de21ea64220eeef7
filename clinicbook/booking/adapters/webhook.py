import datetime as dt
from typing import Any

import httpx
from loguru import logger

from clinicbook.domain.exceptions import NotificationDeliveryError
from clinicbook.domain.models import Notification


class WebhookNotificationSink:
    """Posts each notification as JSON to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def push(self, notification: Notification) -> None:
        payload: dict[str, Any] = {
            "recipient_id": notification.recipient_id,
            "title": notification.title,
            "body": notification.body,
            "sent_at": dt.datetime.now(dt.timezone.utc).isoformat(),
        }
        try:
            resp = await self._client.post(self._url, headers=self._headers(), json=payload)
            resp.raise_for_status()
        except Exception as exc:
            raise NotificationDeliveryError(f"Webhook delivery failed: {exc}") from exc
        logger.debug("Notification delivered to webhook for {}", notification.recipient_id)

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Webhook notification client closed")
