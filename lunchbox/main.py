from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lunchbox.config.settings import settings
from lunchbox.db.db import create_tables
from lunchbox.db.session import AsyncSessionLocal, engine
from lunchbox.utils.logging import get_logger
from lunchbox.routers import main_router
from lunchbox.services.components import NotificationComponents
from lunchbox.utils.errors import setup_error_handlers
from lunchbox.middlewares import RequestIDMiddleware, REQUEST_ID_HEADER, ADMIN_KEY_HEADER

# Initialize the logger
logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Lunchbox notifications is starting up...")

    if app.state.owns_database and settings.DB_AUTO_CREATE:
        await create_tables(engine)

    scheduler = app.state.components.scheduler
    if settings.SCHEDULER_AUTOSTART:
        await scheduler.start()

    yield

    await scheduler.stop()
    if app.state.owns_database:
        await engine.dispose()
    logger.info("Lunchbox notifications is shutting down...")


def create_application(
    components: Optional[NotificationComponents] = None,
) -> FastAPI:
    """
    Initialize the FastAPI application with settings and lifespan events.

    ``components`` lets callers supply their own registry, notifier and
    scheduler handle; by default they are built on the configured database
    and SMTP transport.
    """
    application = FastAPI(
        title=settings.NAME, version=settings.VERSION, lifespan=lifespan
    )

    application.state.owns_database = components is None
    application.state.components = components or NotificationComponents.build(
        AsyncSessionLocal, settings
    )

    # Setup error handlers
    setup_error_handlers(application)

    # Add CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER, ADMIN_KEY_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )

    # Add custom middlewares
    application.add_middleware(RequestIDMiddleware)

    # Routers
    application.include_router(main_router, prefix=settings.API_PREFIX, tags=["APIs"])

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lunchbox.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_config=None,
        log_level=None,
    )
