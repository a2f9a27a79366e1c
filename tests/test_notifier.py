import smtplib
import time
import pytest
from datetime import datetime

from lunchbox.config.settings import Settings
from lunchbox.db.models import ReminderEntry, ReminderKind, SentStatus
from lunchbox.services.notifications.errors import (
    DeliveryRejected,
    InvalidRecipient,
    TransportUnavailable,
)
from lunchbox.services.notifications.mail_transport import (
    OutgoingEmail,
    SmtpMailTransport,
)
from lunchbox.services.notifications.notifier import Notifier, validate_recipient


def make_entry(**overrides) -> ReminderEntry:
    values = dict(
        id="task-1:due_reminder",
        task_id="task-1",
        user_id="user-1",
        kind=ReminderKind.DUE_REMINDER,
        fire_at=datetime(2030, 1, 7, 11, 0),
        due_at=datetime(2030, 1, 7, 12, 0),
        message='Your task "Write <report>" is due soon.',
        user_email="ada@example.org",
        user_name="Ada",
        task_text="Write <report>",
        timezone="Asia/Bangkok",
        sent_status=SentStatus.CLAIMED,
        attempt_count=1,
    )
    values.update(overrides)
    return ReminderEntry(**values)


@pytest.fixture
def notifier(transport) -> Notifier:
    return Notifier(
        transport,
        base_url="https://lunchbox.test/",
        sender_name="Lunchbox AI",
        send_timeout=0.2,
        default_timezone="UTC",
    )


class TestValidateRecipient:
    @pytest.mark.parametrize(
        "email",
        [
            None,
            "",
            "   ",
            "user123@discord.local",
            "someone@discord",
            "unknown@example.com",
            "no-at-sign",
            "two@@signs.org",
        ],
    )
    def test_rejects_unusable_addresses(self, email):
        with pytest.raises(InvalidRecipient):
            validate_recipient(email)

    def test_strips_whitespace(self):
        assert validate_recipient("  ada@example.org ") == "ada@example.org"


class TestCompose:
    """Rendering a reminder entry into an email."""

    def test_subject_and_links(self, notifier):
        email = notifier.compose(make_entry())

        assert email.to == "ada@example.org"
        assert email.subject == "⏰ Reminder: Write <report> is due soon"
        assert "Hello Ada," in email.text
        assert "https://lunchbox.test/tasks" in email.text
        assert "https://lunchbox.test/settings" in email.text

    def test_html_is_escaped(self, notifier):
        email = notifier.compose(make_entry())

        assert "Write &lt;report&gt;" in email.html
        assert "<report>" not in email.html

    def test_due_time_is_shown_in_user_zone(self, notifier):
        email = notifier.compose(make_entry())

        # 12:00 UTC is 19:00 in Bangkok
        assert "19:00" in email.html

    def test_missing_name_falls_back(self, notifier):
        email = notifier.compose(make_entry(user_name=None))

        assert "Hello User," in email.text

    def test_unknown_timezone_falls_back_to_default(self, notifier):
        email = notifier.compose(make_entry(timezone="Mars/Olympus"))

        assert "12:00" in email.html


class TestSend:
    @pytest.mark.asyncio
    async def test_send_returns_message_id(self, notifier, transport):
        message_id = await notifier.send(make_entry())

        assert message_id == "<fake-1@lunchbox.test>"
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_invalid_recipient_never_reaches_transport(self, notifier, transport):
        with pytest.raises(InvalidRecipient):
            await notifier.send(make_entry(user_email="unknown@example.com"))

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_slow_transport_times_out(self, notifier, transport):
        transport.delay = 1

        with pytest.raises(TransportUnavailable):
            await notifier.send(make_entry())

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self, notifier, transport):
        transport.error = DeliveryRejected("550 rejected")

        with pytest.raises(DeliveryRejected):
            await notifier.send(make_entry())

    @pytest.mark.asyncio
    async def test_test_email_uses_defaults(self, notifier, transport):
        await notifier.send_test_email("ada@example.org")

        sent = transport.sent[0]
        assert sent.subject == "Lunchbox notification test"
        assert "test email" in sent.text


class FakeSocket:
    def __init__(self):
        self.timeout = None

    def settimeout(self, value):
        self.timeout = value


class FakeSMTP:
    instances = []
    login_error = None
    login_delay = 0
    send_error = None

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sock = FakeSocket()
        self.messages = []
        self.quit_called = False
        FakeSMTP.instances.append(self)

    def ehlo(self):
        pass

    def starttls(self, context=None):
        pass

    def login(self, username, password):
        if FakeSMTP.login_delay:
            time.sleep(FakeSMTP.login_delay)
        if FakeSMTP.login_error:
            raise FakeSMTP.login_error

    def send_message(self, message):
        if FakeSMTP.send_error:
            raise FakeSMTP.send_error
        self.messages.append(message)

    def quit(self):
        self.quit_called = True

    def close(self):
        pass


class TestSmtpMailTransport:
    """smtplib delivery with the network replaced."""

    @pytest.fixture(autouse=True)
    def fake_smtp(self, monkeypatch):
        FakeSMTP.instances = []
        FakeSMTP.login_error = None
        FakeSMTP.login_delay = 0
        FakeSMTP.send_error = None
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
        return FakeSMTP

    @pytest.fixture
    def smtp_transport(self) -> SmtpMailTransport:
        return SmtpMailTransport(
            host="smtp.example.org",
            port=587,
            username="bot@example.org",
            password="secret",
            from_name="Lunchbox AI",
        )

    @pytest.fixture
    def email(self) -> OutgoingEmail:
        return OutgoingEmail(
            to="ada@example.org", subject="Hi", text="Hello", html="<p>Hello</p>"
        )

    @pytest.mark.asyncio
    async def test_sends_multipart_message(self, smtp_transport, email):
        message_id = await smtp_transport.send(email)

        server = FakeSMTP.instances[0]
        sent = server.messages[0]
        assert sent["Message-ID"] == message_id
        assert sent["To"] == "ada@example.org"
        assert "bot@example.org" in sent["From"]
        assert sent.is_multipart()
        assert server.quit_called

    @pytest.mark.asyncio
    async def test_missing_credentials(self, email):
        transport = SmtpMailTransport(
            host="smtp.example.org", port=587, username="", password=""
        )

        assert transport.configured is False
        with pytest.raises(TransportUnavailable):
            await transport.send(email)

    @pytest.mark.asyncio
    async def test_auth_failure_is_transport_unavailable(self, smtp_transport, email):
        FakeSMTP.login_error = smtplib.SMTPAuthenticationError(535, b"bad credentials")

        with pytest.raises(TransportUnavailable):
            await smtp_transport.send(email)

    @pytest.mark.asyncio
    async def test_refused_recipient_is_delivery_rejected(self, smtp_transport, email):
        FakeSMTP.send_error = smtplib.SMTPRecipientsRefused(
            {"ada@example.org": (550, b"no such user")}
        )

        with pytest.raises(DeliveryRejected):
            await smtp_transport.send(email)

    @pytest.mark.asyncio
    async def test_send_timeout_caps_socket_timeout(self, smtp_transport, email):
        await smtp_transport.send(email)

        assert 0 < FakeSMTP.instances[0].sock.timeout <= smtp_transport.timeout

    @pytest.mark.asyncio
    async def test_slow_handshake_abandons_message(self, email):
        FakeSMTP.login_delay = 0.1
        transport = SmtpMailTransport(
            host="smtp.example.org",
            port=587,
            username="bot@example.org",
            password="secret",
            timeout=0.05,
        )

        with pytest.raises(TransportUnavailable):
            await transport.send(email)

        assert FakeSMTP.instances[0].messages == []

    def test_deadline_stays_below_notifier_timeout(self):
        config = Settings(
            MAIL_USERNAME="bot@example.org",
            MAIL_PASSWORD="secret",
            MAIL_SEND_TIMEOUT_SECONDS=10,
        )

        assert SmtpMailTransport.from_settings(config).timeout < 10
