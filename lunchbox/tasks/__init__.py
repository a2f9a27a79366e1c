from .cron import *

__all__ = [
    # Scheduled/Cron Tasks
    "dispatch_due_reminders_task",
    "purge_reminder_history_task",
]
