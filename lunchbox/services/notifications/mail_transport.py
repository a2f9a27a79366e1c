import asyncio
import smtplib
import ssl
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional

from lunchbox.config.settings import Settings
from lunchbox.utils.logging import get_logger

from .errors import DeliveryRejected, TransportUnavailable

logger = get_logger()

# Share of the notifier timeout the SMTP thread may use before it gives up
SMTP_DEADLINE_FRACTION = 0.8


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    text: str
    html: Optional[str] = None


class MailTransport:
    """Outbound mail collaborator: returns a provider message id or raises a NotifyError."""

    async def send(self, email: OutgoingEmail) -> str:
        raise NotImplementedError


class SmtpMailTransport(MailTransport):
    """
    Blocking smtplib delivery, run in a worker thread.

    The thread gives up once ``timeout`` seconds pass before the message is
    handed to the server. The notifier's own timeout cannot stop the thread,
    so ``from_settings`` keeps this deadline below it.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_address: Optional[str] = None,
        from_name: str = "Lunchbox AI",
        use_ssl: bool = False,
        timeout: float = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address or username
        self.from_name = from_name
        self.use_ssl = use_ssl
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpMailTransport":
        return cls(
            host=settings.MAIL_HOST,
            port=settings.MAIL_PORT,
            username=settings.MAIL_USERNAME,
            password=settings.MAIL_PASSWORD,
            from_address=settings.MAIL_FROM_ADDRESS,
            from_name=settings.MAIL_FROM_NAME,
            use_ssl=settings.MAIL_USE_SSL,
            timeout=settings.MAIL_SEND_TIMEOUT_SECONDS * SMTP_DEADLINE_FRACTION,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    def _build_message(self, email: OutgoingEmail) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = email.subject
        message["From"] = formataddr((self.from_name, self.from_address))
        message["To"] = email.to
        message["Message-ID"] = make_msgid(domain=self.host)
        message.set_content(email.text)
        if email.html:
            message.add_alternative(email.html, subtype="html")
        return message

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        try:
            if self.use_ssl:
                server = smtplib.SMTP_SSL(
                    self.host, self.port, timeout=self.timeout, context=context
                )
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
                server.ehlo()
                server.starttls(context=context)
                server.ehlo()
            server.login(self.username, self.password)
            return server
        except smtplib.SMTPAuthenticationError as e:
            raise TransportUnavailable(
                f"SMTP authentication failed ({e.smtp_code})"
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransportUnavailable(f"SMTP connection failed: {str(e)}") from e

    def _send_blocking(self, email: OutgoingEmail) -> str:
        deadline = time.monotonic() + self.timeout
        message = self._build_message(email)
        server = self._connect()
        try:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportUnavailable(
                    f"SMTP deadline of {self.timeout}s passed before sending"
                )
            server.sock.settimeout(remaining)
            server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryRejected(f"SMTP send failed: {str(e)}") from e
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                server.close()
        return message["Message-ID"]

    async def send(self, email: OutgoingEmail) -> str:
        if not self.configured:
            raise TransportUnavailable("Mail credentials are not configured")
        return await asyncio.to_thread(self._send_blocking, email)
