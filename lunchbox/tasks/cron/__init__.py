from .reminder_dispatcher import dispatch_due_reminders_task
from .reminder_retention import purge_reminder_history_task

__all__ = [
    "dispatch_due_reminders_task",
    "purge_reminder_history_task",
]
