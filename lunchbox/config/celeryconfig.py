from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["lunchbox.tasks"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 5 * 60  # 5 minutes
task_soft_time_limit = 4 * 60  # 4 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Reminder ticks are idempotent; a lost tick is picked up by the next one
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

beat_schedule = {
    # Every minute, same cadence as the in-process poll loop
    "dispatch-due-reminders": {
        "task": "lunchbox.tasks.cron.reminder_dispatcher.dispatch_due_reminders_task",
        "schedule": crontab(minute="*"),
        "args": ("reminder_dispatcher_cron",),
    },
    # Daily maintenance - Run at 00:05 UTC
    "purge-reminder-history": {
        "task": "lunchbox.tasks.cron.reminder_retention.purge_reminder_history_task",
        "schedule": crontab(hour=0, minute=5),
        "args": ("reminder_retention_cron",),
    },
}

# Default Queue
task_default_queue = "lunchbox"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
