import smtplib

import pytest

from bookshelf.config import Settings
from bookshelf.service.email import (
    ConsoleMailSender,
    EmailService,
    MailMessage,
    SmtpMailSender,
    build_mail_sender,
)


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, body):
        if FakeSMTP.fail_with:
            raise FakeSMTP.fail_with
        self.sent.append((from_addr, to_addr, body))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _message():
    return MailMessage(to="ada@example.com", subject="Hi", html_body="<p>Hi</p>", text_body="Hi")


def _settings(**overrides):
    values = {
        "jwt_access_secret": "email-access-secret-0123456789-abcdefghij",
        "jwt_refresh_secret": "email-refresh-secret-0123456789-abcdefghi",
    }
    values.update(overrides)
    return Settings(**values)


def test_console_sender_without_smtp_host():
    assert isinstance(build_mail_sender(_settings(smtp_host=None)), ConsoleMailSender)
    assert ConsoleMailSender().send(_message()) is True


def test_smtp_sender_when_host_configured():
    sender = build_mail_sender(_settings(smtp_host="smtp.example.com", smtp_port=2525))
    assert isinstance(sender, SmtpMailSender)
    assert sender.port == 2525


def test_smtp_delivery_uses_starttls_and_login(fake_smtp):
    sender = SmtpMailSender(
        host="smtp.example.com",
        user="mailer",
        password="pw",
        from_address="noreply@example.com",
    )

    assert sender.send(_message()) is True

    smtp = fake_smtp.instances[0]
    assert smtp.started_tls
    assert smtp.logged_in == ("mailer", "pw")
    from_addr, to_addr, body = smtp.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addr == "ada@example.com"
    assert "Subject: Hi" in body


@pytest.mark.parametrize(
    "error",
    [
        smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no such user")}),
        smtplib.SMTPException("server hung up"),
        OSError("connection refused"),
    ],
)
def test_smtp_failures_return_false(fake_smtp, error):
    fake_smtp.fail_with = error
    sender = SmtpMailSender(host="smtp.example.com", from_address="noreply@example.com")
    assert sender.send(_message()) is False


class Recorder:
    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        return True


def test_templates_link_to_frontend_and_escape_names():
    recorder = Recorder()
    service = EmailService(recorder, frontend_url="https://books.example.com/", app_name="Bookshelf")

    service.send_verification_email("ada@example.com", "<Ada>", "abc123")
    service.send_password_reset_email("ada@example.com", "Ada", "def456")
    service.send_welcome_email("ada@example.com", "Ada")

    verification, reset, welcome = recorder.messages
    assert "https://books.example.com/verify-email?token=abc123" in verification.text_body
    assert "&lt;Ada&gt;" in verification.html_body
    assert "<Ada>" not in verification.html_body
    assert "https://books.example.com/reset-password?token=def456" in reset.html_body
    assert "1 hour" in reset.text_body
    assert welcome.subject == "Welcome to Bookshelf"
