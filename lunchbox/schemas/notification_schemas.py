from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional
from pydantic import ConfigDict, Field, field_validator

from lunchbox.schemas.camel_base_model import CamelCaseBaseModel as BaseModel
from lunchbox.utils.datetime_utils import resolve_timezone, to_utc

WEEKDAY_NAMES = {
    "sun": 0,
    "sunday": 0,
    "mon": 1,
    "monday": 1,
    "tue": 2,
    "tues": 2,
    "tuesday": 2,
    "wed": 3,
    "wednesday": 3,
    "thu": 4,
    "thur": 4,
    "thurs": 4,
    "thursday": 4,
    "fri": 5,
    "friday": 5,
    "sat": 6,
    "saturday": 6,
}


def parse_weekday(value: Any) -> int:
    """Map 0-6 (0=Sunday) or a day name like "Mon" to the 0-6 index."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid weekday: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ValueError(f"Weekday out of range 0-6: {value}")
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned.isdigit():
            return parse_weekday(int(cleaned))
        if cleaned in WEEKDAY_NAMES:
            return WEEKDAY_NAMES[cleaned]
    raise ValueError(f"Invalid weekday: {value!r}")


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValueError(f"Time must be in HH:MM format: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return hour, minute


class TaskRef(BaseModel):
    """Snapshot of a task as the task store hands it to the scheduler"""

    id: Optional[str] = Field(None, description="Task ID")
    user_id: Optional[str] = Field(None, description="Owner user ID")
    user_email: Optional[str] = Field(None, description="Recipient email address")
    user_name: Optional[str] = Field(None, description="Recipient display name")
    text: str = Field("", description="Task title")
    description: Optional[str] = Field(None, description="Task description")
    tags: List[str] = Field(default_factory=list, description="Task tags")
    due_date: Optional[datetime] = Field(None, description="One-off due date")
    available_days: Optional[List[int]] = Field(
        None, description="Weekdays the task recurs on, 0=Sunday..6=Saturday"
    )
    available_days_time: Optional[str] = Field(
        None, description="Local time of day for weekly tasks, HH:MM"
    )
    repeat_weeks: Optional[int] = Field(
        None, ge=1, description="Number of weeks the pattern repeats"
    )
    repeat_start_date: Optional[date] = Field(
        None, description="First day of the weekly repeat window"
    )
    user_timezone: Optional[str] = Field(None, description="IANA timezone name")
    routine_id: Optional[str] = Field(None, description="Routine the task belongs to")
    completed: bool = Field(False, description="Whether the task is completed")
    notifications_enabled: bool = Field(
        True, description="Whether the user wants reminders for this task"
    )

    @field_validator("available_days", mode="before")
    @classmethod
    def normalize_days(cls, value):
        if value is None:
            return None
        if not isinstance(value, (list, tuple, set)):
            value = [value]
        return sorted({parse_weekday(day) for day in value})

    @field_validator("available_days_time", mode="before")
    @classmethod
    def normalize_time(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if not isinstance(value, str):
            raise ValueError("Time must be a string in HH:MM format")
        hour, minute = parse_time_of_day(value)
        return f"{hour:02d}:{minute:02d}"

    @field_validator("repeat_start_date", mode="before")
    @classmethod
    def strip_time_component(cls, value):
        # Clients sometimes send the start date as a full ISO timestamp
        if isinstance(value, str) and "T" in value:
            return value.split("T", 1)[0]
        if isinstance(value, datetime):
            return value.date()
        return value

    @field_validator("user_timezone", mode="before")
    @classmethod
    def validate_timezone(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if not isinstance(value, str):
            raise ValueError("Timezone must be an IANA name string")
        value = value.strip()
        resolve_timezone(value)
        return value


class ScheduleTaskRequest(BaseModel):
    task: TaskRef


class CancelTaskRequest(BaseModel):
    task_id: str = Field(..., min_length=1, description="Task ID")


class SmartUpdateRequest(BaseModel):
    task_id: str = Field(..., description="Task ID")
    old_task: Optional[TaskRef] = Field(
        None, description="Task before the edit; omitted for newly created tasks"
    )
    new_task: TaskRef


class RescheduleAllRequest(BaseModel):
    tasks: List[TaskRef] = Field(default_factory=list)


class SendTestEmailRequest(BaseModel):
    to: str = Field(..., description="Recipient address")
    subject: Optional[str] = Field(None, description="Subject line")
    message: Optional[str] = Field(None, description="Body text")


class CompletionAction(str, Enum):
    COMPLETED = "completed"
    UNCOMPLETED = "uncompleted"


class CompletionEmailRequest(BaseModel):
    task: TaskRef
    action: CompletionAction
    recipients: List[str] = Field(
        default_factory=list, description="Addresses watching this user's tasks"
    )
    completed_by: Optional[str] = Field(
        None, description="Who toggled the task, shown in the email"
    )
    updated_at: Optional[datetime] = Field(
        None, description="When the task was toggled; repeats of the same toggle send once"
    )


class DailySummaryRequest(BaseModel):
    user_email: str = Field(..., description="Recipient address")
    user_name: Optional[str] = Field(None, description="Recipient display name")
    user_timezone: Optional[str] = Field(None, description="IANA timezone name")
    tasks: List[TaskRef] = Field(default_factory=list)


class ReminderEntryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    task_id: str
    user_id: str
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    task_text: Optional[str] = None
    message: str
    kind: str
    sent_status: str
    fire_at: datetime
    due_at: Optional[datetime] = None
    timezone: Optional[str] = None
    attempt_count: int = 0
    claimed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    provider_message_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_detail: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("kind", "sent_status", mode="before")
    @classmethod
    def enum_to_value(cls, value):
        return getattr(value, "value", value)

    @field_validator(
        "fire_at",
        "due_at",
        "claimed_at",
        "sent_at",
        "created_at",
        "updated_at",
        mode="after",
    )
    @classmethod
    def mark_utc(cls, value):
        # Stored naive; clients get an explicit offset
        return to_utc(value) if value is not None else None


class NotificationStatsResponse(BaseModel):
    pending: int = 0
    claimed: int = 0
    sent: int = 0
    cancelled: int = 0
    failed: int = 0
    total: int = 0


class SmartUpdateResponse(BaseModel):
    changed: bool
    cancelled: int = 0
    entries: List[ReminderEntryItem] = Field(default_factory=list)
    rescheduling_alert: Optional[ReminderEntryItem] = None


class RescheduleAllItem(BaseModel):
    task_id: Optional[str] = None
    success: bool
    scheduled: int = 0
    error: Optional[str] = None


class RescheduleAllResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: List[RescheduleAllItem] = Field(default_factory=list)
