from fastapi import APIRouter, Depends, Request, status

from lunchbox.middlewares.admin_key_middleware import require_admin_key
from lunchbox.schemas.scheduler_schemas import SchedulerAction, SchedulerActionRequest
from lunchbox.services.components import get_scheduler_handle
from lunchbox.services.scheduler.scheduler_handle import SchedulerHandle
from lunchbox.utils.logging import get_logger
from lunchbox.utils.responses import ResponseBuilder

scheduler_router = APIRouter(dependencies=[Depends(require_admin_key)])
logger = get_logger()


@scheduler_router.get(
    "",
    status_code=status.HTTP_200_OK,
    summary="Poll loop status",
)
async def get_scheduler_status(
    request: Request,
    scheduler: SchedulerHandle = Depends(get_scheduler_handle),
):
    return ResponseBuilder.success(
        request=request,
        data=scheduler.status().model_dump(by_alias=True, exclude_none=True),
        message="Scheduler is running" if scheduler.running else "Scheduler is stopped",
    )


@scheduler_router.post(
    "",
    status_code=status.HTTP_200_OK,
    summary="Start, stop, check or purge",
)
async def control_scheduler(
    request: Request,
    body: SchedulerActionRequest,
    scheduler: SchedulerHandle = Depends(get_scheduler_handle),
):
    """
    Administrative control of the reminder poll loop.

    - start: start the loop and watchdog (no-op when already running)
    - stop: stop both
    - check: run one dispatch pass now; errors are returned to the caller
    - purge: delete finished entries past the retention period
    """
    logger.info(f"Scheduler action requested: {body.action.value}")
    data = {}

    if body.action == SchedulerAction.START:
        changed = await scheduler.start()
        message = "Scheduler started" if changed else "Scheduler already running"
    elif body.action == SchedulerAction.STOP:
        changed = await scheduler.stop()
        message = "Scheduler stopped" if changed else "Scheduler was not running"
    elif body.action == SchedulerAction.CHECK:
        summary = await scheduler.run_immediate_check()
        data["summary"] = summary.model_dump(by_alias=True)
        message = f"Immediate check completed, {summary.sent} notifications sent"
    else:
        purged = await scheduler.purge()
        data["purged"] = purged
        message = f"Purged {purged} old notifications"

    data["status"] = scheduler.status().model_dump(by_alias=True, exclude_none=True)
    return ResponseBuilder.success(request=request, data=data, message=message)
