from fastapi import APIRouter

from .health import health_router
from .notifications import notifications_router
from .scheduler import scheduler_router

main_router = APIRouter()

# Include domain-based routers
main_router.include_router(health_router, prefix="/health", tags=["Health Checks"])
main_router.include_router(
    notifications_router, prefix="/notifications", tags=["Notifications"]
)
main_router.include_router(scheduler_router, prefix="/scheduler", tags=["Scheduler"])
