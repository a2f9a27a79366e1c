from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from lunchbox.config.settings import settings


def build_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; sqlite gets the thread-check override aiosqlite needs."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
        return create_async_engine(database_url, connect_args=connect_args, echo=echo)

    return create_async_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=echo,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


engine = build_async_engine(str(settings.DATABASE_URL))

AsyncSessionLocal = build_session_factory(engine)
