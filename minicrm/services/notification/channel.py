"""Email channel: port, SMTP adapter and the welcome template."""

import asyncio
import html
import re
import smtplib
import ssl
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from minicrm.common.config import settings
from minicrm.common.errors import SideEffectError
from minicrm.common.logging import logger


WELCOME_TITLE = "Welcome to MiniCRM!"
WELCOME_TEMPLATE_ID = "welcome-email"

_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")


class EmailPort(ABC):
    """Abstract interface for email dispatch adapters."""

    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str, text_body: str | None = None) -> str:
        """Send one message and return its message id.

        Raises `SideEffectError` when the channel is unreachable or rejects it.
        """
        ...


def html_to_text(markup: str) -> str:
    """Plain-text fallback: strip tags, unescape entities, collapse whitespace."""

    return _SPACE_RE.sub(" ", html.unescape(_TAG_RE.sub("", markup))).strip()


def render_welcome_email(first_name: str, role: str) -> tuple[str, str]:
    """Subject and HTML body for a newly created user."""

    first_name = html.escape(first_name)
    role = html.escape(role)
    body = f"""
      <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h1 style="color: #333; text-align: center;">{WELCOME_TITLE}</h1>
        <div style="background-color: #f8f9fa; padding: 20px; border-radius: 8px; margin: 20px 0;">
          <h2 style="color: #007bff; margin-top: 0;">Hello {first_name}!</h2>
          <p style="color: #666; line-height: 1.6">
            Your account has been successfully created with the role: <strong>{role}</strong>
          </p>
          <p style="color: #666; line-height: 1.6">
            You can now log in to your MiniCRM account and start managing your leads and customers.
          </p>
        </div>
        <div style="text-align: center; margin-top: 30px;">
          <p style="color: #999; font-size: 12px;">
            This is an automated message from MiniCRM. Please do not reply to this email.
          </p>
        </div>
      </div>
    """
    return WELCOME_TITLE, body


def welcome_message(first_name: str | None, role: str | None) -> str:
    """Short audit-log text stored on the notification record."""

    return f"Welcome {first_name}! Your account has been created with role: {role}"


class SmtpEmailChannel(EmailPort):
    """Send mail through the configured SMTP relay (STARTTLS, or SSL on 465)."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        sender_name: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.user = user or settings.smtp_user
        self.password = password or settings.smtp_password
        self.sender = sender or settings.email_from or settings.smtp_user
        self.sender_name = sender_name or settings.email_from_name
        self.timeout = timeout

    def _build(self, to: str, subject: str, html_body: str, text_body: str | None) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.sender_name, self.sender))
        msg["To"] = to
        msg["Message-ID"] = make_msgid(domain=self.sender.split("@")[-1] if self.sender else None)
        msg.set_content(text_body or html_to_text(html_body))
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=ssl.create_default_context()) as server:
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=ssl.create_default_context())
                    server.ehlo()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)

    async def send(self, to: str, subject: str, html_body: str, text_body: str | None = None) -> str:
        if not (self.host and self.sender):
            raise SideEffectError("Email sending failed: SMTP is not configured")
        msg = self._build(to, subject, html_body, text_body)
        try:
            # smtplib blocks; keep the event loop free for other events/requests.
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("email_send_failed to=%s error=%s", to, exc)
            raise SideEffectError(f"Email sending failed: {exc}") from exc
        logger.info("email_sent to=%s message_id=%s", to, msg["Message-ID"])
        return msg["Message-ID"]
