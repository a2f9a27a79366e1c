from typing import List

from fastapi import APIRouter, Depends, Path, Request, status

from lunchbox.db.models import ReminderEntry
from lunchbox.middlewares.admin_key_middleware import require_admin_key
from lunchbox.schemas.notification_schemas import (
    CancelTaskRequest,
    CompletionEmailRequest,
    DailySummaryRequest,
    NotificationStatsResponse,
    ReminderEntryItem,
    RescheduleAllItem,
    RescheduleAllRequest,
    RescheduleAllResponse,
    ScheduleTaskRequest,
    SendTestEmailRequest,
    SmartUpdateRequest,
    SmartUpdateResponse,
)
from lunchbox.services.components import (
    get_notifier,
    get_scheduling_service,
    get_task_email_service,
)
from lunchbox.services.notifications.errors import InvalidRecipient, NotifyError
from lunchbox.services.notifications.notifier import Notifier
from lunchbox.services.notifications.scheduling_service import (
    ReminderSchedulingService,
)
from lunchbox.services.notifications.task_emails import TaskEmailService
from lunchbox.utils.errors import (
    BusinessLogicError,
    RegistryUnavailableError,
    ReminderValidationError,
)
from lunchbox.utils.logging import get_logger
from lunchbox.utils.responses import ResponseBuilder

notifications_router = APIRouter()
logger = get_logger()


def _items(entries: List[ReminderEntry]) -> List[ReminderEntryItem]:
    return [ReminderEntryItem.model_validate(entry) for entry in entries]


def _transport_failure(request: Request, e: NotifyError):
    return ResponseBuilder.error(
        request=request,
        message=e.message,
        error_code=e.reason.upper(),
        status_code=status.HTTP_502_BAD_GATEWAY,
    )


@notifications_router.post(
    "/schedule",
    status_code=status.HTTP_200_OK,
    summary="Schedule reminders for a task",
)
async def schedule_task_notifications(
    request: Request,
    body: ScheduleTaskRequest,
    service: ReminderSchedulingService = Depends(get_scheduling_service),
):
    """
    Write the due reminder, overdue alert and day-of-week reminders for a
    task. Repeating the call with the same task changes nothing.
    """
    try:
        entries = await service.schedule_for_task(body.task)
        items = _items(entries)

        return ResponseBuilder.success(
            request=request,
            data={"taskId": body.task.id, "count": len(items), "entries": items},
            message=f"Scheduled {len(items)} notifications for task {body.task.id}",
        )

    except (ReminderValidationError, RegistryUnavailableError):
        raise
    except Exception as e:
        logger.error(f"Failed to schedule notifications: {str(e)}")
        raise BusinessLogicError(
            "Failed to schedule notifications", "SCHEDULE_FAILED"
        )


@notifications_router.post(
    "/cancel",
    status_code=status.HTTP_200_OK,
    summary="Cancel pending reminders for a task",
)
async def cancel_task_notifications(
    request: Request,
    body: CancelTaskRequest,
    service: ReminderSchedulingService = Depends(get_scheduling_service),
):
    """Called when a task is completed or deleted."""
    try:
        cancelled = await service.cancel_for_task(body.task_id)

        return ResponseBuilder.success(
            request=request,
            data={"taskId": body.task_id, "cancelled": cancelled},
            message=f"Cancelled {cancelled} pending notifications",
        )

    except (ReminderValidationError, RegistryUnavailableError):
        raise
    except Exception as e:
        logger.error(f"Failed to cancel notifications for {body.task_id}: {str(e)}")
        raise BusinessLogicError("Failed to cancel notifications", "CANCEL_FAILED")


@notifications_router.post(
    "/smart-update",
    status_code=status.HTTP_200_OK,
    summary="Reconcile reminders after a task edit",
)
async def smart_update_task_notifications(
    request: Request,
    body: SmartUpdateRequest,
    service: ReminderSchedulingService = Depends(get_scheduling_service),
):
    try:
        result = await service.smart_update(body.task_id, body.old_task, body.new_task)

        response = SmartUpdateResponse(
            changed=result.changed,
            cancelled=result.cancelled,
            entries=_items(result.entries),
            rescheduling_alert=(
                ReminderEntryItem.model_validate(result.rescheduling_alert)
                if result.rescheduling_alert
                else None
            ),
        )
        return ResponseBuilder.success(
            request=request,
            data=response.model_dump(by_alias=True),
            message=(
                "Notifications updated" if result.changed else "No schedule changes"
            ),
        )

    except (ReminderValidationError, RegistryUnavailableError):
        raise
    except Exception as e:
        logger.error(f"Failed to update notifications for {body.task_id}: {str(e)}")
        raise BusinessLogicError("Failed to update notifications", "UPDATE_FAILED")


@notifications_router.post(
    "/reschedule-all",
    status_code=status.HTTP_200_OK,
    summary="Re-run scheduling for a batch of tasks",
)
async def reschedule_all_notifications(
    request: Request,
    body: RescheduleAllRequest,
    service: ReminderSchedulingService = Depends(get_scheduling_service),
):
    outcomes = await service.reschedule_all(body.tasks)

    results = [
        RescheduleAllItem(
            task_id=outcome.task_id,
            success=outcome.success,
            scheduled=outcome.scheduled,
            error=outcome.error,
        )
        for outcome in outcomes
    ]
    succeeded = sum(1 for item in results if item.success)
    response = RescheduleAllResponse(
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )

    if response.failed:
        return ResponseBuilder.warning(
            request=request,
            data=response.model_dump(by_alias=True),
            message=f"Rescheduled notifications for {succeeded} of {len(results)} tasks",
            warnings=[
                f"{item.task_id}: {item.error}" for item in results if not item.success
            ],
        )
    return ResponseBuilder.success(
        request=request,
        data=response.model_dump(by_alias=True),
        message=f"Rescheduled notifications for {len(results)} tasks",
    )


@notifications_router.get(
    "/stats",
    status_code=status.HTTP_200_OK,
    summary="Reminder counts by status",
)
async def get_notification_stats(
    request: Request,
    service: ReminderSchedulingService = Depends(get_scheduling_service),
):
    counts = await service.get_notification_stats()

    return ResponseBuilder.success(
        request=request,
        data=NotificationStatsResponse(**counts).model_dump(by_alias=True),
        message="Notification stats retrieved",
    )


@notifications_router.get(
    "/tasks/{task_id}",
    status_code=status.HTTP_200_OK,
    summary="Reminder entries of a task",
)
async def get_task_notifications(
    request: Request,
    task_id: str = Path(..., min_length=1),
    service: ReminderSchedulingService = Depends(get_scheduling_service),
):
    entries = await service.registry.list_for_task(task_id)
    items = _items(entries)

    return ResponseBuilder.success(
        request=request,
        data={"taskId": task_id, "count": len(items), "entries": items},
        message=f"Retrieved {len(items)} notifications for task {task_id}",
    )


@notifications_router.post(
    "/test-email",
    status_code=status.HTTP_200_OK,
    summary="Send a test email",
    dependencies=[Depends(require_admin_key)],
)
async def send_test_email(
    request: Request,
    body: SendTestEmailRequest,
    notifier: Notifier = Depends(get_notifier),
):
    try:
        message_id = await notifier.send_test_email(
            to=body.to, subject=body.subject, message=body.message
        )
    except InvalidRecipient as e:
        raise BusinessLogicError(e.message, "INVALID_RECIPIENT")
    except NotifyError as e:
        logger.error(f"Test email to {body.to} failed: {e.message}")
        return _transport_failure(request, e)

    return ResponseBuilder.success(
        request=request,
        data={"to": body.to, "messageId": message_id},
        message="Test email sent",
    )


@notifications_router.post(
    "/completion-email",
    status_code=status.HTTP_200_OK,
    summary="Tell watchers a task was completed or reopened",
    dependencies=[Depends(require_admin_key)],
)
async def send_completion_email(
    request: Request,
    body: CompletionEmailRequest,
    service: TaskEmailService = Depends(get_task_email_service),
):
    """
    Sent when a task is toggled. Repeating the call for the same toggle
    (same ``updatedAt``) does not send a second email.
    """
    try:
        result = await service.send_completion_email(
            task=body.task,
            action=body.action,
            recipients=body.recipients,
            completed_by=body.completed_by,
            updated_at=body.updated_at,
        )
    except NotifyError as e:
        logger.error(f"Completion email for {body.task.id} failed: {e.message}")
        return _transport_failure(request, e)

    data = {
        "taskId": body.task.id,
        "action": body.action.value,
        "emailsSent": len(result.recipients) if result.sent else 0,
        "recipients": result.recipients,
        "messageId": result.message_id,
    }
    if not result.sent:
        return ResponseBuilder.success(
            request=request, data=data, message=result.skipped_reason
        )
    return ResponseBuilder.success(
        request=request,
        data=data,
        message=f"Email sent to {len(result.recipients)} recipient(s)",
    )


@notifications_router.post(
    "/daily-summary",
    status_code=status.HTTP_200_OK,
    summary="Send a user their daily task summary",
    dependencies=[Depends(require_admin_key)],
)
async def send_daily_summary(
    request: Request,
    body: DailySummaryRequest,
    service: TaskEmailService = Depends(get_task_email_service),
):
    try:
        message_id = await service.send_daily_summary(body)
    except InvalidRecipient as e:
        raise BusinessLogicError(e.message, "INVALID_RECIPIENT")
    except NotifyError as e:
        logger.error(f"Daily summary to {body.user_email} failed: {e.message}")
        return _transport_failure(request, e)

    return ResponseBuilder.success(
        request=request,
        data={"to": body.user_email, "messageId": message_id, "tasks": len(body.tasks)},
        message="Daily summary sent",
    )
