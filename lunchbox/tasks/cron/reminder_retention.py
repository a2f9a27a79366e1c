import asyncio
from datetime import timedelta

from lunchbox.celery import celery
from lunchbox.config.settings import settings
from lunchbox.db.session import build_async_engine, build_session_factory
from lunchbox.services.notifications.registry import ReminderRegistry
from lunchbox.utils.errors import RegistryUnavailableError
from lunchbox.utils.logging import get_logger
from lunchbox.utils.datetime_utils import utc_now


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def purge_reminder_history_task(self, request_id: str):
    """
    Daily task deleting sent, cancelled and failed reminder entries that
    were last updated more than REMINDER_RETENTION_DAYS ago.

    Args:
        request_id: Request ID for tracking purposes
    """
    return asyncio.run(_async_purge_reminder_history(request_id))


async def _async_purge_reminder_history(request_id: str):
    logger = get_logger().bind(request_id=request_id)
    engine = build_async_engine(settings.DATABASE_URL)

    try:
        cutoff = utc_now() - timedelta(days=settings.REMINDER_RETENTION_DAYS)
        registry = ReminderRegistry(build_session_factory(engine))
        purged = await registry.purge_older_than(cutoff)

        logger.info(f"Purged {purged} reminder entries older than {cutoff.isoformat()}")
        return {
            "success": True,
            "purged_count": purged,
            "cutoff": cutoff.isoformat(),
            "request_id": request_id,
        }

    except RegistryUnavailableError as e:
        logger.error(f"Reminder retention task failed: {e.message}")
        return {
            "success": False,
            "error": e.message,
            "request_id": request_id,
        }

    finally:
        await engine.dispose()
