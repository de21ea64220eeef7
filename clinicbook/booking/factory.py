import sys
from typing import Callable

from loguru import logger

from clinicbook.booking.adapters.inbox import InMemoryNotificationSink
from clinicbook.booking.adapters.memory import InMemoryBookingStore
from clinicbook.booking.adapters.sql import SqlBookingStore
from clinicbook.booking.adapters.webhook import WebhookNotificationSink
from clinicbook.booking.ports import (
    BookingStoreProtocol,
    IdentityProviderProtocol,
    NotificationSinkProtocol,
)
from clinicbook.booking.service import BookingService
from clinicbook.config import AppConfig, NotificationBackend, StoreBackend


def configure_logging(level: str) -> None:
    """Replace loguru's default sink with a stderr sink at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _build_memory_store(config: AppConfig) -> BookingStoreProtocol:
    return InMemoryBookingStore()


def _build_sql_store(config: AppConfig) -> BookingStoreProtocol:
    return SqlBookingStore(config.store.database_url, echo=config.store.echo)


def _build_inbox_sink(config: AppConfig) -> NotificationSinkProtocol:
    return InMemoryNotificationSink()


def _build_webhook_sink(config: AppConfig) -> NotificationSinkProtocol:
    if not config.notifications.webhook_url:
        raise ValueError("CLINICBOOK_NOTIFY_WEBHOOK_URL is required for the webhook backend")
    return WebhookNotificationSink(
        config.notifications.webhook_url,
        token=config.notifications.webhook_token,
        timeout_seconds=config.notifications.timeout_seconds,
    )


_STORE_BUILDERS: dict[StoreBackend, Callable[[AppConfig], BookingStoreProtocol]] = {
    StoreBackend.MEMORY: _build_memory_store,
    StoreBackend.SQL: _build_sql_store,
}

_SINK_BUILDERS: dict[NotificationBackend, Callable[[AppConfig], NotificationSinkProtocol]] = {
    NotificationBackend.INBOX: _build_inbox_sink,
    NotificationBackend.WEBHOOK: _build_webhook_sink,
}


def build_booking_service(
    config: AppConfig, identities: IdentityProviderProtocol
) -> BookingService:
    """Build the booking service with the store and notification backends from config.

    The caller still has to ``await service.startup()`` before use.
    """
    store_backend = config.store.backend
    sink_backend = config.notifications.backend
    logger.info(
        "Building booking service with store: {}, notifications: {}",
        store_backend.value,
        sink_backend.value,
    )
    return BookingService(
        _STORE_BUILDERS[store_backend](config),
        identities,
        _SINK_BUILDERS[sink_backend](config),
        clinic_timezone=config.clinic_timezone,
        default_calendar=config.calendar.to_calendar_config(),
        patient_cancel_lead=config.policy.patient_cancel_lead,
        store_retry_attempts=config.store.retry_attempts,
        store_retry_wait_seconds=config.store.retry_wait_seconds,
    )
