from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from lunchbox.db.models import ReminderKind
from lunchbox.schemas.notification_schemas import (
    CompletionAction,
    DailySummaryRequest,
    TaskRef,
)
from lunchbox.utils.datetime_utils import to_utc, utc_now
from lunchbox.utils.errors import ReminderValidationError
from lunchbox.utils.logging import get_logger

from .errors import NotifyError
from .notifier import Notifier, clean_recipients
from .registry import ReminderDraft, ReminderRegistry

logger = get_logger()


def completion_key(task_id: str, action: CompletionAction) -> str:
    """One entry per task and direction, e.g. ``task-1:completion_email:completed``."""
    return f"{task_id}:{ReminderKind.COMPLETION_EMAIL.value}:{action.value}"


@dataclass
class CompletionEmailResult:
    sent: bool
    recipients: List[str] = field(default_factory=list)
    message_id: Optional[str] = None
    skipped_reason: Optional[str] = None


class TaskEmailService:
    """
    Emails sent on request rather than on a schedule: the completed or
    reopened notice for watchers of a task, and the daily summary.

    Completion notices go through the reminder registry so that repeated
    requests for the same toggle send once. The task's ``updated_at`` is the
    version: a notice is sent only for a version newer than the last one
    recorded for that task and direction.
    """

    def __init__(
        self,
        registry: ReminderRegistry,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.notifier = notifier
        self._clock = clock

    def _now(self) -> datetime:
        return to_utc(self._clock())

    async def send_completion_email(
        self,
        task: TaskRef,
        action: CompletionAction,
        recipients: Sequence[str],
        completed_by: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> CompletionEmailResult:
        """
        Raises ReminderValidationError for a task without id or owner and
        NotifyError when the transport fails; the failure is recorded first.
        """
        if not task.id or not task.user_id:
            raise ReminderValidationError(
                "Task id and userId are required", "MISSING_TASK_FIELDS"
            )

        cleaned = clean_recipients(recipients)
        if not cleaned:
            return CompletionEmailResult(
                sent=False, skipped_reason="No email addresses configured"
            )

        version = to_utc(updated_at) if updated_at else self._now()
        actor = completed_by or task.user_name or f"User ({task.user_id[:8]}...)"
        email = self.notifier.compose_completion_email(
            task, action.value, cleaned, actor, version
        )
        draft = ReminderDraft(
            id=completion_key(task.id, action),
            task_id=task.id,
            user_id=task.user_id,
            kind=ReminderKind.COMPLETION_EMAIL,
            fire_at=version,
            message=email.subject,
            user_email=email.to[:320],
            user_name=task.user_name,
            task_text=task.text,
            timezone=task.user_timezone,
        )

        if not await self.registry.reserve(draft):
            logger.info(f"Completion email for {task.id} ({action.value}) already sent")
            return CompletionEmailResult(
                sent=False,
                recipients=cleaned,
                skipped_reason=f"Email already sent for this {action.value} toggle",
            )

        try:
            message_id = await self.notifier.deliver(email)
        except NotifyError as e:
            await self.registry.mark_failed(draft.id, e.reason, e.message, self._now())
            raise

        await self.registry.mark_sent(draft.id, message_id, self._now())
        logger.info(
            f"Sent {action.value} email for task {task.id} to {len(cleaned)} recipient(s)"
        )
        return CompletionEmailResult(
            sent=True, recipients=cleaned, message_id=message_id
        )

    async def send_daily_summary(self, request: DailySummaryRequest) -> str:
        """Compose and send one summary email. Returns the provider message id."""
        email = self.notifier.compose_daily_summary(
            to=request.user_email,
            user_name=request.user_name,
            tasks=request.tasks,
            timezone_name=request.user_timezone,
            now=self._now(),
        )
        message_id = await self.notifier.deliver(email)
        logger.info(
            f"Sent daily summary of {len(request.tasks)} tasks to {email.to}"
        )
        return message_id
