from fastapi import APIRouter, Depends, Request

from lunchbox.config.settings import settings
from lunchbox.services.components import NotificationComponents, get_components
from lunchbox.utils.errors import RegistryUnavailableError
from lunchbox.utils.responses import ResponseBuilder

health_router = APIRouter()


@health_router.get("")
async def health_check(
    request: Request,
    components: NotificationComponents = Depends(get_components),
):
    """
    Basic health check endpoint

    Reports the service version, whether the poll loop is running and
    whether the reminder registry answers.
    """
    try:
        await components.registry.count_by_status()
        registry_status = "ok"
    except RegistryUnavailableError:
        registry_status = "unavailable"

    healthy = registry_status == "ok"
    return ResponseBuilder.success(
        request=request,
        data={
            "status": "healthy" if healthy else "degraded",
            "service": settings.NAME,
            "version": settings.VERSION,
            "scheduler": {"running": components.scheduler.running},
            "registry": registry_status,
        },
        message="Service is running" if healthy else "Service is degraded",
    )
