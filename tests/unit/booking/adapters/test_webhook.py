import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from clinicbook.booking.adapters.webhook import WebhookNotificationSink
from clinicbook.domain.exceptions import NotificationDeliveryError
from clinicbook.domain.models import Notification

WEBHOOK_URL = "https://hooks.clinic.test/notifications"

NOTICE = Notification(recipient_id="patient-1", title="Appointment confirmed", body="See you.")


class TestWebhookNotificationSink:
    @pytest.mark.asyncio
    async def test_posts_json_with_bearer_token(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=202)
        sink = WebhookNotificationSink(WEBHOOK_URL, token="secret")

        await sink.push(NOTICE)
        await sink.close()

        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["Authorization"] == "Bearer secret"
        payload = json.loads(request.content)
        assert payload["recipient_id"] == "patient-1"
        assert payload["title"] == "Appointment confirmed"
        assert payload["body"] == "See you."
        assert "sent_at" in payload

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST")
        sink = WebhookNotificationSink(WEBHOOK_URL)

        await sink.push(NOTICE)
        await sink.close()

        request = httpx_mock.get_request()
        assert request is not None
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_http_error_becomes_delivery_error(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=503)
        sink = WebhookNotificationSink(WEBHOOK_URL)

        with pytest.raises(NotificationDeliveryError, match="503"):
            await sink.push(NOTICE)
        await sink.close()

    @pytest.mark.asyncio
    async def test_network_error_becomes_delivery_error(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))
        sink = WebhookNotificationSink(WEBHOOK_URL)

        with pytest.raises(NotificationDeliveryError, match="connection refused"):
            await sink.push(NOTICE)
        await sink.close()

    @pytest.mark.asyncio
    async def test_uses_injected_client(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST")
        client = httpx.AsyncClient(headers={"X-Clinic": "main"})
        sink = WebhookNotificationSink(WEBHOOK_URL, client=client)

        await sink.push(NOTICE)
        await sink.close()

        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["X-Clinic"] == "main"
        assert client.is_closed
