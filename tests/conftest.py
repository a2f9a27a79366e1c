import os

# Keep test runs off real infrastructure before settings are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-lunchbox.db")
os.environ.setdefault("SCHEDULER_AUTOSTART", "false")
os.environ.setdefault("DB_AUTO_CREATE", "false")
os.environ.setdefault("MAIL_USERNAME", "")
os.environ.setdefault("MAIL_PASSWORD", "")
os.environ.setdefault("ADMIN_API_KEY", "")

import asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lunchbox.config.settings import Settings
from lunchbox.db.db import create_tables
from lunchbox.db.session import build_async_engine, build_session_factory
from lunchbox.schemas.notification_schemas import TaskRef
from lunchbox.services.components import NotificationComponents
from lunchbox.services.notifications.mail_transport import MailTransport, OutgoingEmail
from lunchbox.services.notifications.registry import ReminderRegistry


# 2030-01-07 is a Monday
BASE_TIME = datetime(2030, 1, 7, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime):
        self.now = now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMailTransport(MailTransport):
    """Records outgoing mail; can be told to fail or stall."""

    def __init__(self):
        self.sent: List[OutgoingEmail] = []
        self.error: Optional[Exception] = None
        self.delay: float = 0

    async def send(self, email: OutgoingEmail) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append(email)
        return f"<fake-{len(self.sent)}@lunchbox.test>"


class RecordingRegistry(ReminderRegistry):
    """Counts calls that may write to the store."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.write_calls: List[str] = []

    def reset(self):
        self.write_calls.clear()

    async def upsert(self, draft):
        self.write_calls.append("upsert")
        return await super().upsert(draft)

    async def cancel_pending(self, task_id, exclude_ids=()):
        self.write_calls.append("cancel_pending")
        return await super().cancel_pending(task_id, exclude_ids)


def make_task(**overrides) -> TaskRef:
    data = {
        "id": "task-1",
        "userId": "user-1",
        "userEmail": "ada@example.org",
        "userName": "Ada",
        "text": "Write report",
    }
    data.update(overrides)
    return TaskRef.model_validate(data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeMailTransport:
    return FakeMailTransport()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        REMINDER_LEAD_MINUTES=60,
        OVERDUE_LAG_MINUTES=60,
        RESCHEDULE_ALERT_WINDOW_MINUTES=10,
        DAY_OF_WEEK_HORIZON_WEEKS=4,
        DEFAULT_TIMEZONE="UTC",
        POLL_INTERVAL_SECONDS=0.05,
        WATCHDOG_INTERVAL_SECONDS=0.05,
        DISPATCH_CONCURRENCY=5,
        CLAIM_TIMEOUT_SECONDS=300,
        REMINDER_RETENTION_DAYS=7,
        MAIL_SEND_TIMEOUT_SECONDS=1,
        APP_BASE_URL="https://lunchbox.test",
        ADMIN_API_KEY="",
    )


@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed sqlite so concurrent sessions see each other's commits."""
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}")

    await create_tables(engine)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest.fixture
def registry(session_factory, clock) -> RecordingRegistry:
    return RecordingRegistry(session_factory, clock=clock)


@pytest.fixture
def components(session_factory, test_settings, transport, clock, registry):
    built = NotificationComponents.build(
        session_factory, test_settings, transport=transport, clock=clock
    )
    # Share the recording registry so tests can count writes
    built.registry = registry
    built.scheduling_service.registry = registry
    built.poller.registry = registry
    built.scheduler.registry = registry
    built.task_emails.registry = registry
    return built


@pytest.fixture
def task_factory():
    return make_task
