import asyncio
import re
from datetime import datetime, timedelta, tzinfo
from typing import Iterable, List, Optional, Sequence

from lunchbox.config.settings import settings
from lunchbox.db.models import ReminderEntry
from lunchbox.schemas.notification_schemas import TaskRef
from lunchbox.utils.datetime_utils import (
    format_local_datetime,
    resolve_timezone,
    to_utc,
)
from lunchbox.utils.logging import get_logger

from .errors import InvalidRecipient, TransportUnavailable
from .mail_transport import MailTransport, OutgoingEmail
from .templates import (
    DEFAULT_USER_NAME,
    SummaryLine,
    render_completion_email,
    render_daily_summary,
    render_email,
    render_subject,
)

logger = get_logger()

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Addresses the account-linking flow stores when it has no real email
PLACEHOLDER_EMAIL_MARKERS = ("discord.local", "@discord")
PLACEHOLDER_EMAILS = ("unknown@example.com",)


def validate_recipient(email: Optional[str]) -> str:
    """Return the cleaned address or raise InvalidRecipient."""
    if not email or not email.strip():
        raise InvalidRecipient("Recipient email is missing")

    cleaned = email.strip()
    lowered = cleaned.lower()
    if lowered in PLACEHOLDER_EMAILS or any(
        marker in lowered for marker in PLACEHOLDER_EMAIL_MARKERS
    ):
        raise InvalidRecipient(f"Placeholder email address: {cleaned}")
    if not EMAIL_PATTERN.match(cleaned):
        raise InvalidRecipient(f"Malformed email address: {cleaned}")
    return cleaned


def clean_recipients(emails: Iterable[str]) -> List[str]:
    """Lowercased, de-duplicated usable addresses; unusable ones are dropped."""
    cleaned: List[str] = []
    for email in emails:
        try:
            address = validate_recipient(email).lower()
        except InvalidRecipient as e:
            logger.warning(f"Skipping recipient: {e.message}")
            continue
        if address not in cleaned:
            cleaned.append(address)
    return cleaned


class Notifier:
    """Renders reminder entries into emails and hands them to the mail transport."""

    def __init__(
        self,
        transport: MailTransport,
        base_url: str = settings.APP_BASE_URL,
        sender_name: str = settings.MAIL_FROM_NAME,
        send_timeout: float = settings.MAIL_SEND_TIMEOUT_SECONDS,
        default_timezone: Optional[str] = settings.DEFAULT_TIMEZONE,
    ):
        self.transport = transport
        self.base_url = base_url
        self.sender_name = sender_name
        self.send_timeout = send_timeout
        self.default_timezone = default_timezone

    def compose(self, entry: ReminderEntry) -> OutgoingEmail:
        zone = self._zone(entry.timezone)

        due_local = format_local_datetime(entry.due_at, zone)
        user_name = entry.user_name or DEFAULT_USER_NAME
        subject = render_subject(
            entry.kind,
            {"task_text": entry.task_text or "Untitled task", "due_local": due_local},
        )
        rendered = render_email(
            subject=subject,
            message=entry.message,
            user_name=user_name,
            base_url=self.base_url,
            sender_name=self.sender_name,
            task_text=entry.task_text or "",
            due_local=due_local,
        )
        return OutgoingEmail(
            to=validate_recipient(entry.user_email),
            subject=rendered.subject,
            text=rendered.text,
            html=rendered.html,
        )

    async def deliver(self, email: OutgoingEmail) -> str:
        """Hand a composed email to the transport within ``send_timeout``."""
        try:
            return await asyncio.wait_for(
                self.transport.send(email), timeout=self.send_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportUnavailable(
                f"Mail transport timed out after {self.send_timeout}s"
            ) from e

    async def send(self, entry: ReminderEntry) -> str:
        """
        Deliver one reminder entry.

        Returns the provider message id. Raises InvalidRecipient,
        TransportUnavailable or DeliveryRejected; nothing is retried here.
        """
        email = self.compose(entry)
        message_id = await self.deliver(email)
        logger.info(
            f"Sent {entry.kind.value} for task {entry.task_id} to {email.to} "
            f"(message id {message_id})"
        )
        return message_id

    async def send_test_email(
        self, to: str, subject: Optional[str] = None, message: Optional[str] = None
    ) -> str:
        recipient = validate_recipient(to)
        subject = subject or "Lunchbox notification test"
        rendered = render_email(
            subject=subject,
            message=message or "This is a test email from Lunchbox notifications.",
            user_name=DEFAULT_USER_NAME,
            base_url=self.base_url,
            sender_name=self.sender_name,
        )
        message_id = await self.deliver(
            OutgoingEmail(
                to=recipient,
                subject=rendered.subject,
                text=rendered.text,
                html=rendered.html,
            )
        )
        logger.info(f"Sent test email to {recipient} (message id {message_id})")
        return message_id

    def _zone(self, name: Optional[str]) -> tzinfo:
        """The named zone, falling back to the default for unknown names."""
        try:
            return resolve_timezone(name, self.default_timezone)
        except ValueError:
            return resolve_timezone(None, self.default_timezone)

    def compose_completion_email(
        self,
        task: TaskRef,
        action: str,
        recipients: Sequence[str],
        completed_by: str,
        updated_at: datetime,
    ) -> OutgoingEmail:
        zone = self._zone(task.user_timezone)
        due = self._due_utc(task, zone)
        due_local = format_local_datetime(due, zone) if due else "No due date"

        rendered = render_completion_email(
            action=action,
            user_name=task.user_name or DEFAULT_USER_NAME,
            task_text=task.text or "Untitled task",
            completed_by=completed_by,
            description=task.description or "",
            tags=task.tags,
            due_local=due_local,
            updated_local=format_local_datetime(updated_at, zone),
            base_url=self.base_url,
        )
        return OutgoingEmail(
            to=", ".join(recipients),
            subject=rendered.subject,
            text=rendered.text,
            html=rendered.html,
        )

    def compose_daily_summary(
        self,
        to: str,
        user_name: Optional[str],
        tasks: Sequence[TaskRef],
        timezone_name: Optional[str],
        now: datetime,
    ) -> OutgoingEmail:
        """
        Counts of completed and pending tasks, plus the pending tasks that are
        overdue or due within the next 24 hours.
        """
        zone = self._zone(timezone_name)
        now = to_utc(now)
        soon = now + timedelta(hours=24)

        pending = [task for task in tasks if not task.completed]
        overdue: List[SummaryLine] = []
        due_soon: List[SummaryLine] = []
        for task in sorted(pending, key=lambda t: self._due_utc(t, zone) or soon):
            due = self._due_utc(task, zone)
            if due is None:
                continue
            line = SummaryLine(
                text=task.text or "Untitled task",
                due_local=format_local_datetime(due, zone),
            )
            if due < now:
                overdue.append(line)
            elif due <= soon:
                due_soon.append(line)

        rendered = render_daily_summary(
            user_name=user_name or DEFAULT_USER_NAME,
            day_local=now.astimezone(zone).strftime("%a %d %b %Y"),
            completed=len(tasks) - len(pending),
            pending=len(pending),
            overdue=overdue,
            due_soon=due_soon,
            base_url=self.base_url,
            sender_name=self.sender_name,
        )
        return OutgoingEmail(
            to=validate_recipient(to),
            subject=rendered.subject,
            text=rendered.text,
            html=rendered.html,
        )

    def _due_utc(self, task: TaskRef, fallback_zone: tzinfo) -> Optional[datetime]:
        if task.due_date is None:
            return None
        due = task.due_date
        # A due date without an offset is wall time in the task owner's zone
        if due.tzinfo is None:
            zone = self._zone(task.user_timezone) if task.user_timezone else fallback_zone
            due = due.replace(tzinfo=zone)
        return to_utc(due)
