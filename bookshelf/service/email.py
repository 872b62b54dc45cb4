from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol, Sequence

from bookshelf.config import Settings
from bookshelf.logging import get_logger, mask_email

logger = get_logger(__name__)


@dataclass
class MailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str


class MailSender(Protocol):
    def send(self, message: MailMessage) -> bool: ...


class ConsoleMailSender:
    """Development sender: logs the message instead of delivering it."""

    def send(self, message: MailMessage) -> bool:
        logger.info(
            "email_dev_mode",
            to=mask_email(message.to),
            subject=message.subject,
            body_preview=message.text_body[:500],
        )
        return True


class SmtpMailSender:
    """Deliver mail over SMTP with STARTTLS, or implicit TLS when ``use_tls`` is off."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_address: str,
        from_name: str = "Bookshelf",
        timeout: float = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    def _build(self, message: MailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = message.to
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def send(self, message: MailMessage) -> bool:
        to = mask_email(message.to)
        try:
            msg = self._build(message)
            context = ssl.create_default_context()
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_address, message.to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.host, self.port, context=context, timeout=self.timeout
                ) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_address, message.to, msg.as_string())
            logger.info("email_sent", to=to, subject=message.subject)
            return True
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=to, host=self.host, error=str(exc))
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=to, error=str(exc))
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=to,
                host=self.host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        except ssl.SSLError as exc:
            logger.error("email_ssl_error", to=to, host=self.host, port=self.port, error=str(exc))
        except (TimeoutError, OSError) as exc:
            logger.error("email_connect_failed", to=to, host=self.host, port=self.port, error=str(exc))
        return False


def build_mail_sender(settings: Settings) -> MailSender:
    """Pick the sender once at startup: SMTP when a host is configured."""
    if settings.smtp_host:
        return SmtpMailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    return ConsoleMailSender()


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #3b5bdb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {paragraphs}
        {action}
        <div class="footer"><p>{app_name}</p>{footer}</div>
    </div>
</body>
</html>
"""


class EmailService:
    """Renders transactional messages and hands them to a :class:`MailSender`."""

    def __init__(
        self,
        sender: MailSender,
        *,
        frontend_url: str,
        app_name: str = "Bookshelf",
    ) -> None:
        self.sender = sender
        self.frontend_url = frontend_url.rstrip("/")
        self.app_name = app_name

    def _render(
        self,
        to: str,
        subject: str,
        heading: str,
        paragraphs: Sequence[str],
        *,
        action_label: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> MailMessage:
        html_paragraphs = "\n        ".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        action = footer = ""
        if action_url:
            safe_url = html.escape(action_url, quote=True)
            action = f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(action_label or heading)}</a></p>'
            footer = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
        html_body = _HTML_TEMPLATE.format(
            heading=html.escape(heading),
            paragraphs=html_paragraphs,
            action=action,
            app_name=html.escape(self.app_name),
            footer=footer,
        )
        text_lines = [heading, "", *paragraphs]
        if action_url:
            text_lines += ["", action_url]
        text_lines += ["", "---", self.app_name]
        return MailMessage(to=to, subject=subject, html_body=html_body, text_body="\n".join(text_lines))

    def send_verification_email(self, to_email: str, name: str, token: str) -> bool:
        url = f"{self.frontend_url}/verify-email?token={token}"
        message = self._render(
            to_email,
            f"Verify your {self.app_name} email",
            "Verify your email",
            [
                f"Hi {name},",
                "Thanks for signing up! Please confirm your email address.",
                "This link will expire in 24 hours.",
            ],
            action_label="Verify Email",
            action_url=url,
        )
        return self.sender.send(message)

    def send_password_reset_email(self, to_email: str, name: str, token: str) -> bool:
        url = f"{self.frontend_url}/reset-password?token={token}"
        message = self._render(
            to_email,
            f"Reset your {self.app_name} password",
            "Reset your password",
            [
                f"Hi {name},",
                "We received a request to reset your password.",
                "This link will expire in 1 hour.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_label="Reset Password",
            action_url=url,
        )
        return self.sender.send(message)

    def send_welcome_email(self, to_email: str, name: str) -> bool:
        message = self._render(
            to_email,
            f"Welcome to {self.app_name}",
            f"Welcome, {name}!",
            [
                "Your email address is verified and your account is ready.",
                "Start building your shelf by adding the books you love.",
            ],
            action_label="Open Bookshelf",
            action_url=f"{self.frontend_url}/books",
        )
        return self.sender.send(message)
