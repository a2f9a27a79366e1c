from .errors import NotifyError, InvalidRecipient, TransportUnavailable, DeliveryRejected
from .registry import ReminderRegistry, ReminderDraft
from .reminder_times import ReminderTimeCalculator
from .scheduling_service import ReminderSchedulingService
from .notifier import Notifier
from .mail_transport import MailTransport, SmtpMailTransport, OutgoingEmail

__all__ = [
    "NotifyError",
    "InvalidRecipient",
    "TransportUnavailable",
    "DeliveryRejected",
    "ReminderRegistry",
    "ReminderDraft",
    "ReminderTimeCalculator",
    "ReminderSchedulingService",
    "Notifier",
    "MailTransport",
    "SmtpMailTransport",
    "OutgoingEmail",
]
