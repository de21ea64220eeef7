import datetime as dt
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    delete,
    event,
    select,
    text,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from clinicbook.booking.ports import CalendarPlan, TransitionPlan
from clinicbook.domain.exceptions import (
    AppointmentNotFoundError,
    InvalidTransitionError,
    SlotAlreadyBookedError,
    SlotLockedError,
    StoreUnavailableError,
)
from clinicbook.domain.lifecycle import releases_slot
from clinicbook.domain.models import (
    Appointment,
    AppointmentStatus,
    BookedSlot,
    CalendarConfig,
    SlotKey,
    SlotLock,
    Treatment,
)

_CALENDAR_ROW_ID = "singleton"


class Base(DeclarativeBase):
    pass


class AppointmentRow(Base):
    __tablename__ = "appointments"

    appointment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(128), index=True)
    patient_display_name: Mapped[str] = mapped_column(String(255), default="")
    treatment_label: Mapped[str] = mapped_column(String(255))
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    time: Mapped[dt.time] = mapped_column(Time)
    status: Mapped[str] = mapped_column(String(16), index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class BookedSlotRow(Base):
    """The booked-slot index. Its primary key is the mutual-exclusion key."""

    __tablename__ = "booked_slots"

    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    time: Mapped[dt.time] = mapped_column(Time, primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(128))
    appointment_id: Mapped[str] = mapped_column(
        ForeignKey("appointments.appointment_id"), unique=True
    )


class SlotLockRow(Base):
    __tablename__ = "slot_locks"

    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    time: Mapped[dt.time] = mapped_column(Time, primary_key=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CalendarConfigRow(Base):
    __tablename__ = "calendar_config"

    config_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    payload: Mapped[str] = mapped_column(Text)


class TreatmentRow(Base):
    __tablename__ = "treatments"

    treatment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_label: Mapped[str] = mapped_column(String(255))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    sort_order: Mapped[int | None] = mapped_column(Integer, nullable=True)


def _to_utc(value: dt.datetime) -> dt.datetime:
    return value.astimezone(dt.timezone.utc)


def _as_aware(value: dt.datetime) -> dt.datetime:
    # SQLite drops the offset; everything is written in UTC.
    return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)


def _to_appointment(row: AppointmentRow) -> Appointment:
    return Appointment(
        appointment_id=row.appointment_id,
        patient_id=row.patient_id,
        patient_display_name=row.patient_display_name,
        treatment_label=row.treatment_label,
        date=row.date,
        time=row.time,
        status=AppointmentStatus(row.status),
        created_at=_as_aware(row.created_at),
        cancel_reason=row.cancel_reason,
    )


def _to_appointment_row(appointment: Appointment) -> AppointmentRow:
    return AppointmentRow(
        appointment_id=appointment.appointment_id,
        patient_id=appointment.patient_id,
        patient_display_name=appointment.patient_display_name,
        treatment_label=appointment.treatment_label,
        date=appointment.date,
        time=appointment.time,
        status=appointment.status.value,
        created_at=_to_utc(appointment.created_at),
        cancel_reason=appointment.cancel_reason,
    )


def _to_slot_lock(row: SlotLockRow) -> SlotLock:
    return SlotLock(
        date=row.date,
        time=row.time,
        reason=row.reason,
        created_by=row.created_by,
        created_at=_as_aware(row.created_at) if row.created_at else None,
    )


def _to_treatment(row: TreatmentRow) -> Treatment:
    return Treatment(
        treatment_id=row.treatment_id,
        display_label=row.display_label,
        active=row.active,
        duration_minutes=row.duration_minutes,
        price=row.price,
        sort_order=row.sort_order,
    )


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make SQLite take its write lock at BEGIN so read-then-write steps serialize."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlBookingStore:
    """BookingStoreProtocol backed by a relational database through SQLAlchemy.

    The ``booked_slots`` primary key is what finally decides a reservation
    race: the losing transaction fails with an integrity error and is
    reported as ``SlotAlreadyBookedError``. Driver and pool failures surface
    as ``StoreUnavailableError``.
    """

    def __init__(
        self,
        database_url: str,
        *,
        echo: bool = False,
        busy_timeout_seconds: float = 30.0,
    ) -> None:
        url = make_url(database_url)
        connect_args: dict[str, Any] = {}
        is_sqlite = url.get_backend_name() == "sqlite"
        if is_sqlite:
            connect_args["timeout"] = busy_timeout_seconds

        self._engine = create_async_engine(url, echo=echo, connect_args=connect_args)
        if is_sqlite:
            _use_immediate_transactions(self._engine)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        self._backend = url.get_backend_name()

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions.begin() as session:
                yield session
        except IntegrityError:
            raise
        except (DBAPIError, PoolTimeoutError) as exc:
            raise StoreUnavailableError(f"{operation} failed: {exc}") from exc

    async def initialize(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (DBAPIError, PoolTimeoutError) as exc:
            raise StoreUnavailableError(f"Schema creation failed: {exc}") from exc
        logger.info("Booking store ready (backend={})", self._backend)

    async def insert_reservation(self, appointment: Appointment) -> Appointment:
        key = appointment.slot_key
        try:
            async with self._transaction("insert reservation") as session:
                if await session.get(SlotLockRow, (key.date, key.time)) is not None:
                    raise SlotLockedError(key.date, key.time)

                holder = await session.get(BookedSlotRow, (key.date, key.time))
                if holder is not None:
                    if holder.appointment_id == appointment.appointment_id:
                        stored = await session.get(AppointmentRow, appointment.appointment_id)
                        if stored is not None:
                            return _to_appointment(stored)
                    raise SlotAlreadyBookedError(key.date, key.time)

                session.add(_to_appointment_row(appointment))
                session.add(
                    BookedSlotRow(
                        date=key.date,
                        time=key.time,
                        patient_id=appointment.patient_id,
                        appointment_id=appointment.appointment_id,
                    )
                )
        except IntegrityError as exc:
            raise SlotAlreadyBookedError(key.date, key.time) from exc
        return appointment

    async def apply_transition(
        self, appointment_id: str, plan: TransitionPlan
    ) -> tuple[Appointment, Appointment]:
        async with self._transaction("apply transition") as session:
            row = await session.get(AppointmentRow, appointment_id, with_for_update=True)
            if row is None:
                raise AppointmentNotFoundError(appointment_id)
            before = _to_appointment(row)
            after = plan(before)

            result = await session.execute(
                update(AppointmentRow)
                .where(
                    AppointmentRow.appointment_id == appointment_id,
                    AppointmentRow.status == before.status.value,
                )
                .values(status=after.status.value, cancel_reason=after.cancel_reason)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransitionError("appointment changed concurrently", appointment_id)

            if releases_slot(before.status, after.status):
                await session.execute(
                    delete(BookedSlotRow).where(
                        BookedSlotRow.date == before.date,
                        BookedSlotRow.time == before.time,
                        BookedSlotRow.appointment_id == appointment_id,
                    )
                )
        return before, after

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        async with self._transaction("get appointment") as session:
            row = await session.get(AppointmentRow, appointment_id)
            return _to_appointment(row) if row is not None else None

    async def list_appointments(
        self,
        *,
        date: dt.date | None = None,
        patient_id: str | None = None,
        status: AppointmentStatus | None = None,
        until: dt.date | None = None,
    ) -> list[Appointment]:
        query = select(AppointmentRow)
        if date is not None:
            query = query.where(AppointmentRow.date == date)
        if patient_id is not None:
            query = query.where(AppointmentRow.patient_id == patient_id)
        if status is not None:
            query = query.where(AppointmentRow.status == status.value)
        if until is not None:
            query = query.where(AppointmentRow.date <= until)
        query = query.order_by(AppointmentRow.date, AppointmentRow.time, AppointmentRow.created_at)

        async with self._transaction("list appointments") as session:
            rows = (await session.scalars(query)).all()
            return [_to_appointment(row) for row in rows]

    async def booked_times(self, date: dt.date) -> set[dt.time]:
        async with self._transaction("read booked slots") as session:
            times = await session.scalars(
                select(BookedSlotRow.time).where(BookedSlotRow.date == date)
            )
            return set(times.all())

    async def booked_slots(self) -> dict[SlotKey, BookedSlot]:
        async with self._transaction("read booked slots") as session:
            rows = (await session.scalars(select(BookedSlotRow))).all()
            return {
                SlotKey(row.date, row.time): BookedSlot(
                    date=row.date,
                    time=row.time,
                    patient_id=row.patient_id,
                    appointment_id=row.appointment_id,
                )
                for row in rows
            }

    async def put_slot_lock(self, lock: SlotLock) -> SlotLock:
        try:
            async with self._transaction("put slot lock") as session:
                existing = await session.get(SlotLockRow, (lock.date, lock.time))
                if existing is not None:
                    return _to_slot_lock(existing)
                session.add(
                    SlotLockRow(
                        date=lock.date,
                        time=lock.time,
                        reason=lock.reason,
                        created_by=lock.created_by,
                        created_at=_to_utc(lock.created_at) if lock.created_at else None,
                    )
                )
        except IntegrityError as exc:
            raise StoreUnavailableError(f"Concurrent lock write for {lock.slot_key}") from exc
        return lock

    async def delete_slot_lock(self, date: dt.date, time: dt.time) -> bool:
        async with self._transaction("delete slot lock") as session:
            result = await session.execute(
                delete(SlotLockRow).where(SlotLockRow.date == date, SlotLockRow.time == time)
            )
            return result.rowcount > 0

    async def list_slot_locks(self, date: dt.date) -> list[SlotLock]:
        async with self._transaction("list slot locks") as session:
            rows = await session.scalars(
                select(SlotLockRow).where(SlotLockRow.date == date).order_by(SlotLockRow.time)
            )
            return [_to_slot_lock(row) for row in rows.all()]

    async def load_calendar_config(self) -> CalendarConfig | None:
        async with self._transaction("load calendar config") as session:
            row = await session.get(CalendarConfigRow, _CALENDAR_ROW_ID)
            return CalendarConfig.model_validate_json(row.payload) if row is not None else None

    async def update_calendar_config(self, plan: CalendarPlan) -> CalendarConfig:
        try:
            async with self._transaction("update calendar config") as session:
                row = await session.get(CalendarConfigRow, _CALENDAR_ROW_ID, with_for_update=True)
                current = CalendarConfig.model_validate_json(row.payload) if row else None
                updated = plan(current)
                if row is None:
                    session.add(
                        CalendarConfigRow(
                            config_id=_CALENDAR_ROW_ID, payload=updated.model_dump_json()
                        )
                    )
                else:
                    row.payload = updated.model_dump_json()
        except IntegrityError as exc:
            raise StoreUnavailableError("Concurrent calendar config initialisation") from exc
        return updated

    async def replace_treatments(self, treatments: Sequence[Treatment]) -> None:
        async with self._transaction("replace treatments") as session:
            await session.execute(delete(TreatmentRow))
            session.add_all(
                TreatmentRow(
                    treatment_id=t.treatment_id,
                    display_label=t.display_label,
                    active=t.active,
                    duration_minutes=t.duration_minutes,
                    price=t.price,
                    sort_order=t.sort_order,
                )
                for t in treatments
            )

    async def list_treatments(self) -> list[Treatment]:
        async with self._transaction("list treatments") as session:
            rows = await session.scalars(select(TreatmentRow))
            return [_to_treatment(row) for row in rows.all()]

    async def health_check(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Booking store health check failed: {}", exc)
            return False

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("Booking store closed")
