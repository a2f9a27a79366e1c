import asyncio
from datetime import datetime, timedelta
from typing import Callable, Set

from lunchbox.config.settings import settings
from lunchbox.db.models import ReminderEntry
from lunchbox.schemas.scheduler_schemas import DispatchSummary
from lunchbox.services.notifications.errors import NotifyError
from lunchbox.services.notifications.notifier import Notifier
from lunchbox.services.notifications.registry import ReminderRegistry
from lunchbox.utils.datetime_utils import utc_now, to_utc
from lunchbox.utils.logging import get_logger

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"

INTERNAL_ERROR_REASON = "internal_error"


class DispatchPoller:
    """
    One scan-and-dispatch pass over the reminder registry.

    Each due entry is claimed with a compare-and-swap before it is handed to
    the notifier, so overlapping passes never send the same entry twice.
    Failed entries stay failed; only pending entries are ever picked up.
    """

    def __init__(
        self,
        registry: ReminderRegistry,
        notifier: Notifier,
        concurrency: int = settings.DISPATCH_CONCURRENCY,
        batch_size: int = settings.DISPATCH_BATCH_SIZE,
        claim_timeout_seconds: int = settings.CLAIM_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.notifier = notifier
        self.concurrency = max(1, concurrency)
        self.batch_size = batch_size
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._clock = clock
        self._deliveries: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return to_utc(self._clock())

    async def run_once(self) -> DispatchSummary:
        """Dispatch every pending entry whose fire time has passed. Registry errors propagate."""
        logger = get_logger()
        now = self._now()

        released = await self.registry.release_stale_claims(now - self.claim_timeout)
        due = await self.registry.list_due(now, limit=self.batch_size)
        summary = DispatchSummary(found=len(due), released=released)
        if not due:
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(entry: ReminderEntry) -> str:
            async with semaphore:
                return await self._dispatch(entry)

        outcomes = await asyncio.gather(*(bounded(entry) for entry in due))

        summary.sent = outcomes.count(OUTCOME_SENT)
        summary.failed = outcomes.count(OUTCOME_FAILED)
        summary.skipped = outcomes.count(OUTCOME_SKIPPED)
        summary.claimed = summary.sent + summary.failed

        logger.info(
            f"Dispatch pass: found={summary.found} claimed={summary.claimed} "
            f"sent={summary.sent} failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    @property
    def in_flight(self) -> int:
        return len(self._deliveries)

    async def drain(self, timeout: float) -> int:
        """
        Wait for deliveries that were claimed before the current pass was
        cancelled. Returns how many were still running when ``timeout`` ran out.
        """
        pending = list(self._deliveries)
        if not pending:
            return 0

        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                get_logger().error(
                    f"Reminder delivery failed during shutdown: {task.exception()!r}"
                )
        if still_running:
            get_logger().warning(
                f"{len(still_running)} reminder deliveries still running after {timeout}s"
            )
        return len(still_running)

    async def _dispatch(self, entry: ReminderEntry) -> str:
        logger = get_logger()

        if not await self.registry.claim(entry.id, self._now()):
            logger.debug(f"Reminder {entry.id} already claimed elsewhere, skipping")
            return OUTCOME_SKIPPED

        # A claimed entry always ends sent or failed, even if the pass is cancelled
        delivery = asyncio.ensure_future(self._deliver(entry))
        self._deliveries.add(delivery)
        delivery.add_done_callback(self._deliveries.discard)
        return await asyncio.shield(delivery)

    async def _deliver(self, entry: ReminderEntry) -> str:
        logger = get_logger()

        try:
            message_id = await self.notifier.send(entry)
        except NotifyError as e:
            logger.warning(
                f"Reminder {entry.id} failed ({e.reason}): {e.message}"
            )
            await self.registry.mark_failed(entry.id, e.reason, e.message, self._now())
            return OUTCOME_FAILED
        except Exception as e:
            logger.exception(f"Unexpected error sending reminder {entry.id}")
            await self.registry.mark_failed(
                entry.id, INTERNAL_ERROR_REASON, repr(e), self._now()
            )
            return OUTCOME_FAILED

        await self.registry.mark_sent(entry.id, message_id, self._now())
        return OUTCOME_SENT
