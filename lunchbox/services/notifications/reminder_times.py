from typing import Iterable, List, Optional
from datetime import date, datetime, time, timedelta, tzinfo

from dateutil.rrule import WEEKLY, MO, TU, WE, TH, FR, SA, SU, rrule

from lunchbox.db.models import ReminderKind
from lunchbox.schemas.notification_schemas import parse_time_of_day
from lunchbox.utils.datetime_utils import to_utc

RRULE_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)


def one_off_key(task_id: str, kind: ReminderKind) -> str:
    """Key for due reminders, overdue alerts and rescheduling alerts."""
    return f"{task_id}:{kind.value}"


def occurrence_key(user_id: str, routine_or_task_id: str, day: date) -> str:
    """Key for one day-of-week occurrence."""
    return f"{user_id}:{routine_or_task_id}:{day.isoformat()}"


def to_rrule_weekday(day: int):
    """0=Sunday..6=Saturday to dateutil's Monday-first weekday."""
    return RRULE_WEEKDAYS[(day - 1) % 7]


class ReminderTimeCalculator:
    """Fire-time math for one-off and weekly reminders"""

    def __init__(self, lead_minutes: int, lag_minutes: int, horizon_weeks: int):
        self.lead = timedelta(minutes=lead_minutes)
        self.lag = timedelta(minutes=lag_minutes)
        self.horizon_weeks = horizon_weeks

    def due_reminder_at(self, due: datetime) -> datetime:
        return to_utc(due) - self.lead

    def overdue_alert_at(self, due: datetime) -> datetime:
        return to_utc(due) + self.lag

    def weekly_occurrences(
        self,
        days: Iterable[int],
        time_of_day: Optional[str],
        zone: tzinfo,
        now: datetime,
        start: Optional[date] = None,
        repeat_weeks: Optional[int] = None,
    ) -> List[datetime]:
        """
        Upcoming local occurrences of a weekly pattern.

        Counting starts at the first slot on or after the later of ``start``
        and ``now``; each selected weekday then fires ``repeat_weeks`` times
        (the configured horizon when unbounded). Returns timezone-aware
        datetimes in ``zone``, oldest first. A pattern without a time of day
        has nothing to remind about.
        """
        selected = sorted(set(days))
        if not selected or not time_of_day:
            return []

        hour, minute = parse_time_of_day(time_of_day)
        local_now = to_utc(now).astimezone(zone).replace(tzinfo=None)
        if local_now.second or local_now.microsecond:
            local_now = local_now.replace(second=0, microsecond=0) + timedelta(
                minutes=1
            )
        anchor = local_now
        if start is not None:
            anchor = max(anchor, datetime.combine(start, time.min))
        weeks = repeat_weeks if repeat_weeks else self.horizon_weeks

        rule = rrule(
            WEEKLY,
            dtstart=anchor,
            count=weeks * len(selected),
            byweekday=[to_rrule_weekday(day) for day in selected],
            byhour=hour,
            byminute=minute,
            bysecond=0,
        )
        return [naive_local.replace(tzinfo=zone) for naive_local in rule]
