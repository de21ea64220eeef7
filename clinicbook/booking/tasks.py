import asyncio
import contextlib

from loguru import logger

from clinicbook.booking.service import BookingService


class MissedAppointmentSweeper:
    """Periodically marks overdue scheduled appointments as missed."""

    def __init__(self, service: BookingService, interval_seconds: float = 300.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._service = service
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        try:
            return await self._service.sweep_missed()
        except Exception:
            logger.exception("Missed-appointment sweep failed")
            return 0

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Missed-appointment sweeper started (every {}s)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Missed-appointment sweeper stopped")
