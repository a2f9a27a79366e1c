from typing import Optional
from datetime import datetime
from sqlalchemy import (
    String,
    Integer,
    Text,
    Enum,
    Index,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum

from lunchbox.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


# Enums
class ReminderKind(enum.Enum):
    DUE_REMINDER = "due_reminder"
    OVERDUE_ALERT = "overdue_alert"
    DAY_OF_WEEK_REMINDER = "day_of_week_reminder"
    RESCHEDULING_ALERT = "rescheduling_alert"
    COMPLETION_EMAIL = "completion_email"


class SentStatus(enum.Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Kinds the dispatch poller delivers; completion emails are sent on request
DISPATCHED_KINDS = (
    ReminderKind.DUE_REMINDER,
    ReminderKind.OVERDUE_ALERT,
    ReminderKind.DAY_OF_WEEK_REMINDER,
    ReminderKind.RESCHEDULING_ALERT,
)

# Statuses eligible for retention purge
TERMINAL_STATUSES = (SentStatus.SENT, SentStatus.CANCELLED, SentStatus.FAILED)


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields, naive UTC"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now, nullable=False
    )


# Models
class ReminderEntry(Base, AuditMixin):
    __tablename__ = "reminder_entries"

    # Derived key, see services.notifications.reminder_times
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_email: Mapped[Optional[str]] = mapped_column(String(320))
    user_name: Mapped[Optional[str]] = mapped_column(String(255))
    task_text: Mapped[Optional[str]] = mapped_column(Text)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    fire_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))

    kind: Mapped[ReminderKind] = mapped_column(Enum(ReminderKind), nullable=False)
    sent_status: Mapped[SentStatus] = mapped_column(
        Enum(SentStatus), nullable=False, default=SentStatus.PENDING
    )

    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    failure_reason: Mapped[Optional[str]] = mapped_column(String(64))
    failure_detail: Mapped[Optional[str]] = mapped_column(Text)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_reminder_entries_status_fire_at", "sent_status", "fire_at"),
        Index("idx_reminder_entries_task_status", "task_id", "sent_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReminderEntry(id={self.id!r}, kind={self.kind.value}, "
            f"status={self.sent_status.value}, fire_at={self.fire_at})>"
        )
