import asyncio

from lunchbox.celery import celery
from lunchbox.config.settings import settings
from lunchbox.db.session import build_async_engine, build_session_factory
from lunchbox.services.notifications.mail_transport import SmtpMailTransport
from lunchbox.services.notifications.notifier import Notifier
from lunchbox.services.notifications.registry import ReminderRegistry
from lunchbox.services.scheduler.dispatch_poller import DispatchPoller
from lunchbox.utils.context import request_id_scope
from lunchbox.utils.errors import RegistryUnavailableError
from lunchbox.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def dispatch_due_reminders_task(self, request_id: str):
    """
    Run one reminder dispatch pass from a Celery worker.

    Beat triggers it every minute. It is safe next to the in-process poll
    loop: every entry is claimed before it is sent, so a reminder picked up
    by both is only delivered once.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_dispatch_due_reminders(request_id))


async def _async_dispatch_due_reminders(request_id: str):
    logger = get_logger().bind(request_id=request_id)
    engine = build_async_engine(settings.DATABASE_URL)

    try:
        with request_id_scope(request_id):
            registry = ReminderRegistry(build_session_factory(engine))
            poller = DispatchPoller(
                registry, Notifier(SmtpMailTransport.from_settings(settings))
            )
            summary = await poller.run_once()

        logger.info(
            f"Reminder dispatch task completed: sent={summary.sent} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return {
            "success": True,
            **summary.model_dump(),
            "request_id": request_id,
        }

    except RegistryUnavailableError as e:
        logger.error(f"Reminder dispatch task could not reach the registry: {e.message}")
        return {
            "success": False,
            "error": e.message,
            "request_id": request_id,
        }

    finally:
        await engine.dispose()
