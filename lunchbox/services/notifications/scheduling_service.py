from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, List, Optional, Tuple

from lunchbox.config.settings import settings
from lunchbox.db.models import ReminderEntry, ReminderKind
from lunchbox.schemas.notification_schemas import TaskRef
from lunchbox.utils.datetime_utils import (
    format_local_datetime,
    resolve_timezone,
    to_utc,
    utc_now,
)
from lunchbox.utils.errors import RegistryUnavailableError, ReminderValidationError
from lunchbox.utils.logging import get_logger

from .registry import ReminderDraft, ReminderRegistry, UPSERT_UNCHANGED
from .reminder_times import ReminderTimeCalculator, occurrence_key, one_off_key
from .templates import DEFAULT_USER_NAME, render_message

logger = get_logger()


@dataclass
class SmartUpdateResult:
    changed: bool
    cancelled: int = 0
    entries: List[ReminderEntry] = field(default_factory=list)
    rescheduling_alert: Optional[ReminderEntry] = None


@dataclass
class RescheduleOutcome:
    task_id: Optional[str]
    success: bool
    scheduled: int = 0
    error: Optional[str] = None


class ReminderSchedulingService:
    """
    Turns task snapshots into reminder entries.

    One-off due dates get a reminder ``lead`` minutes before and an overdue
    alert ``lag`` minutes after. Weekly patterns get one entry per upcoming
    occurrence. Scheduling converges: pending entries the current schedule
    no longer produces are cancelled.
    """

    def __init__(
        self,
        registry: ReminderRegistry,
        lead_minutes: int = settings.REMINDER_LEAD_MINUTES,
        lag_minutes: int = settings.OVERDUE_LAG_MINUTES,
        horizon_weeks: int = settings.DAY_OF_WEEK_HORIZON_WEEKS,
        default_timezone: Optional[str] = settings.DEFAULT_TIMEZONE,
        reschedule_window_minutes: int = settings.RESCHEDULE_ALERT_WINDOW_MINUTES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.calculator = ReminderTimeCalculator(
            lead_minutes=lead_minutes,
            lag_minutes=lag_minutes,
            horizon_weeks=horizon_weeks,
        )
        self.default_timezone = default_timezone
        self.reschedule_window = timedelta(minutes=reschedule_window_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        return to_utc(self._clock())

    @staticmethod
    def _validate(task: TaskRef):
        if not task.id or not task.id.strip():
            raise ReminderValidationError("Task id is required", "MISSING_TASK_ID")
        if not task.user_id or not task.user_id.strip():
            raise ReminderValidationError(
                f"Task {task.id} has no userId", "MISSING_USER_ID"
            )

    def _zone(self, task: TaskRef) -> Tuple[tzinfo, str]:
        try:
            zone = resolve_timezone(task.user_timezone, self.default_timezone)
        except ValueError as e:
            raise ReminderValidationError(str(e), "INVALID_TIMEZONE") from e
        return zone, task.user_timezone or str(zone)

    @staticmethod
    def _due_instant(task: TaskRef, zone: tzinfo) -> Optional[datetime]:
        if task.due_date is None:
            return None
        due = task.due_date
        # A due date without an offset is wall time in the user's zone
        if due.tzinfo is None:
            due = due.replace(tzinfo=zone)
        return to_utc(due)

    def _template_data(
        self, task: TaskRef, when: datetime, zone: tzinfo
    ) -> Dict[str, object]:
        return {
            "task_text": task.text or "Untitled task",
            "user_name": task.user_name or DEFAULT_USER_NAME,
            "due_local": format_local_datetime(when, zone),
            "window_minutes": int(self.reschedule_window.total_seconds() // 60),
        }

    def _draft(
        self,
        task: TaskRef,
        entry_id: str,
        kind: ReminderKind,
        fire_at: datetime,
        due_at: datetime,
        zone: tzinfo,
        zone_name: str,
    ) -> ReminderDraft:
        return ReminderDraft(
            id=entry_id,
            task_id=task.id,
            user_id=task.user_id,
            kind=kind,
            fire_at=fire_at,
            due_at=due_at,
            message=render_message(kind, self._template_data(task, due_at, zone)),
            user_email=task.user_email,
            user_name=task.user_name,
            task_text=task.text,
            timezone=zone_name,
        )

    def build_drafts(self, task: TaskRef) -> List[ReminderDraft]:
        """Entries the task's current schedule calls for, without touching the registry."""
        if task.completed or not task.notifications_enabled:
            return []

        zone, zone_name = self._zone(task)
        drafts: List[ReminderDraft] = []

        due = self._due_instant(task, zone)
        if due is not None:
            drafts.append(
                self._draft(
                    task,
                    one_off_key(task.id, ReminderKind.DUE_REMINDER),
                    ReminderKind.DUE_REMINDER,
                    self.calculator.due_reminder_at(due),
                    due,
                    zone,
                    zone_name,
                )
            )
            drafts.append(
                self._draft(
                    task,
                    one_off_key(task.id, ReminderKind.OVERDUE_ALERT),
                    ReminderKind.OVERDUE_ALERT,
                    self.calculator.overdue_alert_at(due),
                    due,
                    zone,
                    zone_name,
                )
            )

        if task.available_days:
            occurrences = self.calculator.weekly_occurrences(
                days=task.available_days,
                time_of_day=task.available_days_time,
                zone=zone,
                now=self._now(),
                start=task.repeat_start_date,
                repeat_weeks=task.repeat_weeks,
            )
            series_id = task.routine_id or task.id
            for occurrence in occurrences:
                drafts.append(
                    self._draft(
                        task,
                        occurrence_key(task.user_id, series_id, occurrence.date()),
                        ReminderKind.DAY_OF_WEEK_REMINDER,
                        occurrence,
                        occurrence,
                        zone,
                        zone_name,
                    )
                )

        return drafts

    async def _apply(self, task: TaskRef) -> Tuple[List[ReminderEntry], int]:
        drafts = self.build_drafts(task)

        writes = 0
        for draft in drafts:
            if await self.registry.upsert(draft) != UPSERT_UNCHANGED:
                writes += 1

        # Rescheduling alerts live outside the regular schedule
        keep = [draft.id for draft in drafts]
        if drafts:
            keep.append(one_off_key(task.id, ReminderKind.RESCHEDULING_ALERT))
        cancelled = await self.registry.cancel_pending(task.id, exclude_ids=keep)

        wanted = set(keep)
        entries = [
            entry
            for entry in await self.registry.list_for_task(task.id)
            if entry.id in wanted and entry.kind != ReminderKind.RESCHEDULING_ALERT
        ]

        logger.info(
            f"Scheduled task {task.id}: {len(drafts)} reminders "
            f"({writes} written), {cancelled} stale cancelled"
        )
        return entries, cancelled

    async def schedule_for_task(self, task: TaskRef) -> List[ReminderEntry]:
        """
        Write the reminders for a task's due date and weekly pattern.

        Fire times already in the past are still written so the next poll
        sends them. Completed tasks and tasks with notifications turned off
        get no new entries, and their pending ones are cancelled.
        """
        self._validate(task)
        entries, _ = await self._apply(task)
        return entries

    async def cancel_for_task(self, task_id: str) -> int:
        """Cancel every pending entry of the task. Safe to call repeatedly."""
        if not task_id or not task_id.strip():
            raise ReminderValidationError("Task id is required", "MISSING_TASK_ID")

        cancelled = await self.registry.cancel_pending(task_id)
        logger.info(f"Cancelled {cancelled} pending reminders for task {task_id}")
        return cancelled

    def _signature(self, task: TaskRef) -> tuple:
        zone, zone_name = self._zone(task)
        return (
            self._due_instant(task, zone),
            tuple(task.available_days or ()),
            task.available_days_time,
            task.repeat_weeks,
            task.repeat_start_date,
            zone_name,
            task.completed,
            task.notifications_enabled,
        )

    async def smart_update(
        self, task_id: str, old_task: Optional[TaskRef], new_task: TaskRef
    ) -> SmartUpdateResult:
        """
        Reconcile reminders after a task edit.

        Nothing is written when the schedule-relevant fields are unchanged.
        Otherwise stale pending entries are cancelled and the new schedule is
        written. Moving a due date that was within the alert window of now
        also queues an immediate rescheduling alert.
        """
        self._validate(new_task)
        if task_id != new_task.id:
            raise ReminderValidationError(
                f"taskId {task_id} does not match newTask.id {new_task.id}",
                "TASK_ID_MISMATCH",
            )
        if old_task is not None and old_task.id and old_task.id != task_id:
            raise ReminderValidationError(
                f"taskId {task_id} does not match oldTask.id {old_task.id}",
                "TASK_ID_MISMATCH",
            )

        if old_task is not None and self._signature(old_task) == self._signature(
            new_task
        ):
            logger.info(f"Schedule unchanged for task {task_id}, nothing to update")
            return SmartUpdateResult(changed=False)

        entries, cancelled = await self._apply(new_task)

        alert = None
        if old_task is not None and self._needs_rescheduling_alert(old_task, new_task):
            alert = await self._write_rescheduling_alert(new_task)

        return SmartUpdateResult(
            changed=True,
            cancelled=cancelled,
            entries=entries,
            rescheduling_alert=alert,
        )

    def _needs_rescheduling_alert(self, old_task: TaskRef, new_task: TaskRef) -> bool:
        if new_task.completed or not new_task.notifications_enabled:
            return False

        old_zone, _ = self._zone(old_task)
        new_zone, _ = self._zone(new_task)
        old_due = self._due_instant(old_task, old_zone)
        new_due = self._due_instant(new_task, new_zone)
        if old_due is None or new_due is None or old_due == new_due:
            return False

        return abs(old_due - self._now()) <= self.reschedule_window

    async def _write_rescheduling_alert(self, task: TaskRef) -> Optional[ReminderEntry]:
        zone, zone_name = self._zone(task)
        draft = self._draft(
            task,
            one_off_key(task.id, ReminderKind.RESCHEDULING_ALERT),
            ReminderKind.RESCHEDULING_ALERT,
            self._now(),
            self._due_instant(task, zone),
            zone,
            zone_name,
        )
        await self.registry.upsert(draft)
        logger.info(f"Queued rescheduling alert for task {task.id}")
        return await self.registry.get(draft.id)

    async def reschedule_all(self, tasks: List[TaskRef]) -> List[RescheduleOutcome]:
        """
        Re-run scheduling for a batch of tasks.

        A task that fails validation is reported and skipped. An unavailable
        registry aborts the batch.
        """
        outcomes: List[RescheduleOutcome] = []
        for task in tasks:
            try:
                entries = await self.schedule_for_task(task)
                outcomes.append(
                    RescheduleOutcome(
                        task_id=task.id, success=True, scheduled=len(entries)
                    )
                )
            except RegistryUnavailableError:
                raise
            except ReminderValidationError as e:
                logger.warning(f"Skipping task {task.id} during reschedule: {e.message}")
                outcomes.append(
                    RescheduleOutcome(task_id=task.id, success=False, error=e.message)
                )

        succeeded = sum(1 for outcome in outcomes if outcome.success)
        logger.info(f"Rescheduled {succeeded}/{len(outcomes)} tasks")
        return outcomes

    async def get_notification_stats(self) -> Dict[str, int]:
        return await self.registry.count_by_status()
