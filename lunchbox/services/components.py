from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lunchbox.config.settings import Settings
from lunchbox.utils.datetime_utils import utc_now

from .notifications.mail_transport import MailTransport, SmtpMailTransport
from .notifications.notifier import Notifier
from .notifications.registry import ReminderRegistry
from .notifications.scheduling_service import ReminderSchedulingService
from .notifications.task_emails import TaskEmailService
from .scheduler.dispatch_poller import DispatchPoller
from .scheduler.scheduler_handle import SchedulerHandle


@dataclass
class NotificationComponents:
    """The reminder registry and everything built on top of it, wired once per process."""

    registry: ReminderRegistry
    scheduling_service: ReminderSchedulingService
    notifier: Notifier
    poller: DispatchPoller
    scheduler: SchedulerHandle
    task_emails: TaskEmailService

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings,
        transport: Optional[MailTransport] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "NotificationComponents":
        registry = ReminderRegistry(session_factory, clock=clock)
        scheduling_service = ReminderSchedulingService(
            registry,
            lead_minutes=config.REMINDER_LEAD_MINUTES,
            lag_minutes=config.OVERDUE_LAG_MINUTES,
            horizon_weeks=config.DAY_OF_WEEK_HORIZON_WEEKS,
            default_timezone=config.DEFAULT_TIMEZONE,
            reschedule_window_minutes=config.RESCHEDULE_ALERT_WINDOW_MINUTES,
            clock=clock,
        )
        notifier = Notifier(
            transport or SmtpMailTransport.from_settings(config),
            base_url=config.APP_BASE_URL,
            sender_name=config.MAIL_FROM_NAME,
            send_timeout=config.MAIL_SEND_TIMEOUT_SECONDS,
            default_timezone=config.DEFAULT_TIMEZONE,
        )
        poller = DispatchPoller(
            registry,
            notifier,
            concurrency=config.DISPATCH_CONCURRENCY,
            batch_size=config.DISPATCH_BATCH_SIZE,
            claim_timeout_seconds=config.CLAIM_TIMEOUT_SECONDS,
            clock=clock,
        )
        scheduler = SchedulerHandle(
            poller,
            registry,
            poll_interval=config.POLL_INTERVAL_SECONDS,
            watchdog_interval=config.WATCHDOG_INTERVAL_SECONDS,
            retention_days=config.REMINDER_RETENTION_DAYS,
            purge_interval_hours=config.REMINDER_PURGE_INTERVAL_HOURS,
            stop_grace_seconds=config.SCHEDULER_STOP_GRACE_SECONDS,
            clock=clock,
        )
        task_emails = TaskEmailService(registry, notifier, clock=clock)
        return cls(
            registry=registry,
            scheduling_service=scheduling_service,
            notifier=notifier,
            poller=poller,
            scheduler=scheduler,
            task_emails=task_emails,
        )


def get_components(request: Request) -> NotificationComponents:
    """Dependency returning the components built by the application factory"""
    return request.app.state.components


def get_scheduling_service(request: Request) -> ReminderSchedulingService:
    return get_components(request).scheduling_service


def get_notifier(request: Request) -> Notifier:
    return get_components(request).notifier


def get_scheduler_handle(request: Request) -> SchedulerHandle:
    return get_components(request).scheduler


def get_task_email_service(request: Request) -> TaskEmailService:
    return get_components(request).task_emails
