import datetime as dt
from enum import Enum

from pydantic import Field, PositiveInt
from pydantic_settings import BaseSettings, SettingsConfigDict

from clinicbook.domain.models import CalendarConfig, TimeWindow


class StoreBackend(Enum):
    MEMORY = "memory"
    SQL = "sql"


class NotificationBackend(Enum):
    INBOX = "inbox"
    WEBHOOK = "webhook"


class StoreConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CLINICBOOK_STORE_", env_file=".env", extra="ignore")

    backend: StoreBackend = StoreBackend.MEMORY
    database_url: str = "sqlite+aiosqlite:///clinicbook.db"
    echo: bool = False
    retry_attempts: PositiveInt = 3
    retry_wait_seconds: float = Field(default=0.05, ge=0)


class NotificationConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CLINICBOOK_NOTIFY_", env_file=".env", extra="ignore"
    )

    backend: NotificationBackend = NotificationBackend.INBOX
    webhook_url: str = ""
    webhook_token: str = ""
    timeout_seconds: float = 10.0


class BookingPolicy(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CLINICBOOK_POLICY_", env_file=".env", extra="ignore"
    )

    # 0 lets patients cancel right up to the appointment.
    patient_cancel_lead_minutes: int = Field(default=120, ge=0)
    missed_sweep_interval_seconds: float = Field(default=300.0, gt=0)

    @property
    def patient_cancel_lead(self) -> dt.timedelta | None:
        if not self.patient_cancel_lead_minutes:
            return None
        return dt.timedelta(minutes=self.patient_cancel_lead_minutes)


class CalendarDefaults(BaseSettings):
    """Seed values for the calendar when the store holds none yet."""

    model_config = SettingsConfigDict(
        env_prefix="CLINICBOOK_CALENDAR_", env_file=".env", extra="ignore"
    )

    work_start: dt.time = dt.time(9, 0)
    work_end: dt.time = dt.time(17, 0)
    break_start: dt.time | None = dt.time(12, 0)
    break_end: dt.time | None = dt.time(13, 0)
    slot_duration_minutes: PositiveInt = 30

    def to_calendar_config(self) -> CalendarConfig:
        break_window = None
        if self.break_start is not None and self.break_end is not None:
            break_window = TimeWindow(start=self.break_start, end=self.break_end)
        return CalendarConfig(
            working_hours=TimeWindow(start=self.work_start, end=self.work_end),
            break_window=break_window,
            slot_duration_minutes=self.slot_duration_minutes,
        )


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CLINICBOOK_", env_file=".env", extra="ignore")

    clinic_timezone: str = "Asia/Bangkok"
    log_level: str = "INFO"
    store: StoreConfig = Field(default_factory=StoreConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    policy: BookingPolicy = Field(default_factory=BookingPolicy)
    calendar: CalendarDefaults = Field(default_factory=CalendarDefaults)
