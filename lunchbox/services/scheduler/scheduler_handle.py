import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from lunchbox.config.settings import settings
from lunchbox.schemas.scheduler_schemas import DispatchSummary, SchedulerStatusResponse
from lunchbox.services.notifications.registry import ReminderRegistry
from lunchbox.utils.context import request_id_scope
from lunchbox.utils.datetime_utils import utc_now, to_utc
from lunchbox.utils.logging import get_logger

from .dispatch_poller import DispatchPoller

logger = get_logger()


class SchedulerHandle:
    """
    Owner of the recurring poll loop and its watchdog.

    Built once by the process entry point; nothing runs until ``start()``.
    The poll loop ticks immediately and then every ``poll_interval`` seconds.
    The watchdog checks every ``watchdog_interval`` seconds and restarts the
    loop if it died or its running flag was cleared without ``stop()``.
    """

    def __init__(
        self,
        poller: DispatchPoller,
        registry: ReminderRegistry,
        poll_interval: float = settings.POLL_INTERVAL_SECONDS,
        watchdog_interval: float = settings.WATCHDOG_INTERVAL_SECONDS,
        retention_days: int = settings.REMINDER_RETENTION_DAYS,
        purge_interval_hours: float = settings.REMINDER_PURGE_INTERVAL_HOURS,
        stop_grace_seconds: float = settings.SCHEDULER_STOP_GRACE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.poller = poller
        self.registry = registry
        self.poll_interval = poll_interval
        self.watchdog_interval = watchdog_interval
        self.retention = timedelta(days=retention_days)
        self.purge_interval = timedelta(hours=purge_interval_hours)
        self.stop_grace = stop_grace_seconds
        self._clock = clock

        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._last_tick_at: Optional[datetime] = None
        self._last_purge_at: Optional[datetime] = None
        self.restart_count = 0

    def _now(self) -> datetime:
        return to_utc(self._clock())

    @property
    def running(self) -> bool:
        return (
            self._running
            and self._poll_task is not None
            and not self._poll_task.done()
        )

    async def start(self) -> bool:
        """Start the poll loop and watchdog. Returns False if already running."""
        if self.running:
            return False

        # A loop whose flag was cleared may still be sleeping
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()

        self._running = True
        self._poll_task = asyncio.create_task(
            self._poll_loop(), name="lunchbox-reminder-poll"
        )
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(
                self._watchdog_loop(), name="lunchbox-reminder-watchdog"
            )

        logger.info(
            f"Reminder scheduler started (poll every {self.poll_interval}s, "
            f"watchdog every {self.watchdog_interval}s)"
        )
        return True

    async def stop(self) -> bool:
        """
        Stop both loops. Returns False if nothing was running.

        Deliveries already claimed by the cancelled pass are awaited for up to
        ``stop_grace`` seconds so their sent/failed state is recorded.
        """
        tasks = [
            task
            for task in (self._poll_task, self._watchdog_task)
            if task is not None and not task.done()
        ]
        was_running = self._running or bool(tasks)

        self._running = False
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._watchdog_task = None

        if self.poller.in_flight:
            logger.info(
                f"Waiting for {self.poller.in_flight} reminder deliveries to finish"
            )
            await self.poller.drain(self.stop_grace)

        if was_running:
            logger.info("Reminder scheduler stopped")
        return was_running

    def status(self) -> SchedulerStatusResponse:
        return SchedulerStatusResponse(
            running=self.running,
            interval_ms=int(self.poll_interval * 1000),
            watchdog_interval_ms=int(self.watchdog_interval * 1000),
            last_tick_at=self._last_tick_at.isoformat() if self._last_tick_at else None,
            last_purge_at=(
                self._last_purge_at.isoformat() if self._last_purge_at else None
            ),
        )

    async def run_immediate_check(self) -> DispatchSummary:
        """One dispatch pass outside the cadence. Errors reach the caller."""
        summary = await self.poller.run_once()
        self._last_tick_at = self._now()
        return summary

    async def purge(self) -> int:
        """Delete finished entries older than the retention period."""
        now = self._now()
        purged = await self.registry.purge_older_than(now - self.retention)
        self._last_purge_at = now
        get_logger().info(f"Purged {purged} reminder entries older than {self.retention.days} days")
        return purged

    async def _tick(self):
        with request_id_scope(f"scheduler-{uuid.uuid4().hex[:8]}"):
            try:
                await self.run_immediate_check()
                if (
                    self._last_purge_at is None
                    or self._now() - self._last_purge_at >= self.purge_interval
                ):
                    await self.purge()
            except Exception:
                # One bad pass must not kill the loop
                get_logger().exception("Reminder poll tick failed")

    async def _poll_loop(self):
        try:
            while self._running:
                await self._tick()
                await asyncio.sleep(self.poll_interval)
        finally:
            if asyncio.current_task() is self._poll_task:
                self._running = False

    async def _watchdog_loop(self):
        while True:
            await asyncio.sleep(self.watchdog_interval)
            if self._poll_task is None and not self._running:
                # Stopped explicitly
                continue
            if not self.running:
                logger.warning("Reminder poll loop is not running, restarting it")
                self.restart_count += 1
                await self.start()
