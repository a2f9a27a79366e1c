from dataclasses import dataclass
from html import escape
from typing import Dict, List, Tuple

from lunchbox.db.models import ReminderKind
from lunchbox.utils.logging import get_logger

logger = get_logger()

DEFAULT_USER_NAME = "User"


@dataclass(frozen=True)
class ChannelTemplate:
    subject: str
    message: str


# Subjects and pre-rendered bodies, filled from a notification data dict
REMINDER_TEMPLATES: Dict[ReminderKind, ChannelTemplate] = {
    ReminderKind.DUE_REMINDER: ChannelTemplate(
        subject="⏰ Reminder: {task_text} is due soon",
        message=(
            'Your task "{task_text}" is due at {due_local}. '
            "This is a friendly reminder to help you stay on track!"
        ),
    ),
    ReminderKind.OVERDUE_ALERT: ChannelTemplate(
        subject="🚨 Overdue: {task_text} needs attention",
        message=(
            'Your task "{task_text}" was due at {due_local} and is now overdue. '
            "Please complete this task as soon as possible."
        ),
    ),
    ReminderKind.DAY_OF_WEEK_REMINDER: ChannelTemplate(
        subject="📝 Task Reminder: {task_text}",
        message='Your task "{task_text}" is scheduled for {due_local}.',
    ),
    ReminderKind.RESCHEDULING_ALERT: ChannelTemplate(
        subject="🔄 Rescheduled: {task_text}",
        message=(
            'Your task "{task_text}" got rescheduled within last '
            "{window_minutes} minutes of completion time. "
            "New due time: {due_local}"
        ),
    ),
}

TEXT_BODY = """Hello {user_name},

{message}

View your tasks: {tasks_url}
Notification settings: {settings_url}

Best regards,
{sender_name}
"""

HTML_BODY = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <title>{subject}</title>
  </head>
  <body style="font-family: Arial, sans-serif; color: #1f2933; line-height: 1.5;">
    <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
      <h2 style="margin-top: 0;">{subject}</h2>
      <p>Hello {user_name},</p>
      <p>{message}</p>
      {task_details}
      <p>
        <a href="{tasks_url}" style="background: #2563eb; color: #ffffff; padding: 10px 16px; border-radius: 6px; text-decoration: none;">View your tasks</a>
      </p>
      <hr style="border: none; border-top: 1px solid #e5e7eb;">
      <p style="font-size: 12px; color: #6b7280;">
        Sent by {sender_name}.
        <a href="{settings_url}">Manage notification settings</a>
      </p>
    </div>
  </body>
</html>
"""

TASK_DETAILS_HTML = """<table style="border-collapse: collapse; margin: 12px 0;">
        <tr><td style="padding: 4px 12px 4px 0; color: #6b7280;">Task</td><td>{task_text}</td></tr>
        <tr><td style="padding: 4px 12px 4px 0; color: #6b7280;">When</td><td>{due_local}</td></tr>
      </table>"""


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


def _format(template: str, data: Dict[str, object]) -> str:
    try:
        return template.format(**data)
    except KeyError as e:
        logger.error(f"Template error: missing {e}")
        return template


def render_message(kind: ReminderKind, data: Dict[str, object]) -> str:
    """The pre-rendered body stored on a reminder entry."""
    return _format(REMINDER_TEMPLATES[kind].message, data)


def render_subject(kind: ReminderKind, data: Dict[str, object]) -> str:
    return _format(REMINDER_TEMPLATES[kind].subject, data)


def render_email(
    subject: str,
    message: str,
    user_name: str,
    base_url: str,
    sender_name: str,
    task_text: str = "",
    due_local: str = "",
    details_text: str = "",
    details_html: str = "",
) -> RenderedEmail:
    """
    Wrap a message in the plain text and HTML email layouts.

    ``details_text`` and ``details_html`` are appended below the message;
    without them a task/when table is shown when ``task_text`` is set.
    """
    base_url = base_url.rstrip("/")
    links = {
        "tasks_url": f"{base_url}/tasks",
        "settings_url": f"{base_url}/settings",
    }
    name = user_name or DEFAULT_USER_NAME

    text = TEXT_BODY.format(
        user_name=name,
        message=f"{message}\n\n{details_text}".rstrip() if details_text else message,
        sender_name=sender_name,
        **links,
    )

    task_details = details_html
    if task_text and not details_html:
        task_details = TASK_DETAILS_HTML.format(
            task_text=escape(task_text), due_local=escape(due_local or "N/A")
        )
    html = HTML_BODY.format(
        subject=escape(subject),
        user_name=escape(name),
        message=escape(message).replace("\n", "<br>"),
        task_details=task_details,
        sender_name=escape(sender_name),
        tasks_url=escape(links["tasks_url"], quote=True),
        settings_url=escape(links["settings_url"], quote=True),
    )
    return RenderedEmail(subject=subject, text=text, html=html)


COMPLETION_LABELS = {
    "completed": "✅ Task Completed",
    "uncompleted": "↩️ Task Marked Incomplete",
}

COMPLETION_TEXT_BODY = """{subject}

Task: {task_text}
Action: {action}
{action_by_label} {completed_by}
Tags: {tags}
Due: {due_local}
Updated: {updated_local}

View your tasks: {tasks_url}
Manage who receives completion emails: {settings_url}
"""

COMPLETION_HTML_BODY = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <title>{subject}</title>
  </head>
  <body style="font-family: Arial, sans-serif; color: #1f2933; line-height: 1.5;">
    <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
      <h2 style="margin-top: 0;">{label}</h2>
      <p>Hello {user_name},</p>
      <p>The task <strong>{task_text}</strong> was <strong>{action}</strong>.</p>
      <p><strong>{action_by_label}</strong> {completed_by}</p>
      {description}
      <p><strong>Tags:</strong> {tags}</p>
      <p><strong>Due:</strong> {due_local}</p>
      <p><strong>Updated:</strong> {updated_local}</p>
      <p><a href="{tasks_url}" style="color: #2563eb;">View your tasks</a></p>
      <hr style="border: none; border-top: 1px solid #e5e7eb;">
      <p style="font-size: 12px; color: #6b7280;">
        <a href="{settings_url}">Manage who receives completion emails</a>
      </p>
    </div>
  </body>
</html>
"""


def render_completion_email(
    action: str,
    user_name: str,
    task_text: str,
    completed_by: str,
    description: str,
    tags: List[str],
    due_local: str,
    updated_local: str,
    base_url: str,
) -> RenderedEmail:
    """Email telling watchers that a task was completed or reopened."""
    label = COMPLETION_LABELS[action]
    subject = f"{label}: {task_text}"
    action_by_label = "Completed by:" if action == "completed" else "Uncompleted by:"
    tags_text = ", ".join(f"#{tag}" for tag in tags) or "No tags"
    base_url = base_url.rstrip("/")
    links = {
        "tasks_url": f"{base_url}/tasks",
        "settings_url": f"{base_url}/settings",
    }

    text = COMPLETION_TEXT_BODY.format(
        subject=subject,
        task_text=task_text,
        action=action,
        action_by_label=action_by_label,
        completed_by=completed_by,
        tags=tags_text,
        due_local=due_local,
        updated_local=updated_local,
        **links,
    )
    html = COMPLETION_HTML_BODY.format(
        subject=escape(subject),
        label=escape(label),
        user_name=escape(user_name or DEFAULT_USER_NAME),
        task_text=escape(task_text),
        action=escape(action),
        action_by_label=escape(action_by_label),
        completed_by=escape(completed_by),
        description=(
            f"<p><strong>Description:</strong> {escape(description)}</p>"
            if description
            else ""
        ),
        tags=escape(tags_text),
        due_local=escape(due_local),
        updated_local=escape(updated_local),
        tasks_url=escape(links["tasks_url"], quote=True),
        settings_url=escape(links["settings_url"], quote=True),
    )
    return RenderedEmail(subject=subject, text=text, html=html)


@dataclass(frozen=True)
class SummaryLine:
    text: str
    due_local: str


SUMMARY_SECTION_HTML = """<h3 style="margin-bottom: 8px;">{title}</h3>
      <ul style="padding-left: 18px; margin-top: 0;">{items}</ul>"""


def _summary_section(title: str, lines: List[SummaryLine]) -> Tuple[str, str]:
    if not lines:
        return "", ""
    text = "\n".join([title] + [f"- {line.text} (due {line.due_local})" for line in lines])
    items = "".join(
        f"<li>{escape(line.text)} <span style=\"color: #6b7280;\">due {escape(line.due_local)}</span></li>"
        for line in lines
    )
    return text + "\n\n", SUMMARY_SECTION_HTML.format(title=escape(title), items=items)


def render_daily_summary(
    user_name: str,
    day_local: str,
    completed: int,
    pending: int,
    overdue: List[SummaryLine],
    due_soon: List[SummaryLine],
    base_url: str,
    sender_name: str,
) -> RenderedEmail:
    """Once-a-day digest: counts plus the overdue and due-soon tasks."""
    subject = f"📋 Daily Task Summary for {day_local}"
    counts = (
        f"Completed: {completed}\nPending: {pending}\n"
        f"Overdue: {len(overdue)}\nDue soon: {len(due_soon)}"
    )
    overdue_text, overdue_html = _summary_section("🚨 Overdue Tasks", overdue)
    soon_text, soon_html = _summary_section("⏰ Due Soon", due_soon)

    return render_email(
        subject=subject,
        message=counts,
        user_name=user_name,
        base_url=base_url,
        sender_name=sender_name,
        details_text=overdue_text + soon_text,
        details_html=overdue_html + soon_html,
    )
