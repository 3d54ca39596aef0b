from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger, redact_email

logger = get_logger(__name__)


class NotificationSender(Protocol):
    def send_lockout_notice(self, to_email: str, locked_until: datetime) -> bool: ...

    def send_two_factor_enabled(self, to_email: str) -> bool: ...

    def send_password_changed(self, to_email: str) -> bool: ...

    def send_email_confirmation(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...


def send_safely(event: str, send: Callable[..., Any], *args: Any) -> bool:
    """Invoke a notification callable without letting failures escape.

    Notices are fire-and-forget: a broken mail relay must never fail the
    authentication step that triggered it.
    """
    try:
        return bool(send(*args))
    except Exception as exc:
        logger.warning(
            "notification_failed",
            notification=event,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=True,
        )
        return False


def _render_html(title: str, paragraphs: list[str], link: Optional[str], brand: str) -> str:
    body = "\n".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    button = ""
    if link:
        safe_link = html.escape(link, quote=True)
        button = (
            f'<p style="margin: 24px 0;"><a href="{safe_link}" '
            f'style="background:#1f6feb;color:#fff;padding:10px 20px;'
            f'border-radius:6px;text-decoration:none;">Continue</a></p>'
            f"<p style=\"font-size:12px;\">Or paste this URL into your browser: {safe_link}</p>"
        )
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family:sans-serif;line-height:1.5;\">"
        f"<div style=\"max-width:600px;margin:0 auto;padding:32px 16px;\">"
        f"<h2>{html.escape(title)}</h2>{body}{button}"
        f"<p style=\"font-size:12px;color:#666;\">{html.escape(brand)}</p>"
        "</div></body></html>"
    )


def _render_text(title: str, paragraphs: list[str], link: Optional[str], brand: str) -> str:
    lines = [title, ""]
    for paragraph in paragraphs:
        lines.extend([paragraph, ""])
    if link:
        lines.extend([link, ""])
    lines.extend(["--", brand])
    return "\n".join(lines)


@dataclass(frozen=True)
class SmtpRelay:
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    starttls: bool = True
    sender_address: Optional[str] = None
    sender_name: str = "Authcore"
    timeout: float = 30.0

    @property
    def usable(self) -> bool:
        return bool(self.host and self.sender_address)


class EmailNotificationSender:
    """SMTP-backed notification sender.

    Without a relay host the messages are logged (subject and redacted
    recipient only) instead of being sent, which keeps development setups
    working without a mail server.
    """

    def __init__(
        self,
        relay: SmtpRelay,
        *,
        base_url: Optional[str] = None,
        confirmation_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.relay = relay
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.confirmation_ttl_hours = confirmation_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotificationSender":
        relay = SmtpRelay(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            starttls=settings.smtp_use_tls,
            sender_address=settings.email_from_address or settings.smtp_user,
            sender_name=settings.email_from_name,
        )
        return cls(
            relay,
            base_url=settings.app_base_url,
            confirmation_ttl_hours=settings.email_confirmation_ttl_hours,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return self.relay.usable

    def _compose(
        self, to_email: str, subject: str, paragraphs: list[str], link: Optional[str]
    ) -> MIMEMultipart:
        relay = self.relay
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{relay.sender_name} <{relay.sender_address}>"
        message["To"] = to_email
        brand = relay.sender_name
        message.attach(MIMEText(_render_text(subject, paragraphs, link, brand), "plain"))
        message.attach(MIMEText(_render_html(subject, paragraphs, link, brand), "html"))
        return message

    def _open(self) -> smtplib.SMTP:
        relay = self.relay
        tls = ssl.create_default_context()
        if relay.starttls:
            conn = smtplib.SMTP(relay.host, relay.port, timeout=relay.timeout)
            conn.starttls(context=tls)
        else:
            conn = smtplib.SMTP_SSL(relay.host, relay.port, context=tls, timeout=relay.timeout)
        try:
            if relay.username and relay.password:
                conn.login(relay.username, relay.password)
        except (smtplib.SMTPException, OSError):
            conn.close()
            raise
        return conn

    def _send(
        self,
        to_email: str,
        subject: str,
        paragraphs: list[str],
        link: Optional[str] = None,
    ) -> bool:
        recipient = redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject, has_link=link is not None)
            return True

        message = self._compose(to_email, subject, paragraphs, link)
        try:
            with self._open() as conn:
                conn.sendmail(self.relay.sender_address, to_email, message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.relay.host,
                smtp_status=exc.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.relay.host,
                port=self.relay.port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_lockout_notice(self, to_email: str, locked_until: datetime) -> bool:
        return self._send(
            to_email,
            "Your account has been temporarily locked",
            [
                "We detected several failed sign-in attempts on your account, so "
                "it has been locked for your protection.",
                f"You can try again after {locked_until.strftime('%Y-%m-%d %H:%M UTC')}.",
                "If these attempts were not you, consider changing your password.",
            ],
        )

    def send_two_factor_enabled(self, to_email: str) -> bool:
        return self._send(
            to_email,
            "Two-factor authentication enabled",
            [
                "Two-factor authentication is now active on your account.",
                "Keep your recovery codes somewhere safe. Each one works only once.",
                "If you did not make this change, contact support immediately.",
            ],
        )

    def send_password_changed(self, to_email: str) -> bool:
        return self._send(
            to_email,
            "Your password was changed",
            [
                "The password for your account was just changed and all other "
                "sessions were signed out.",
                "If you did not make this change, reset your password right away.",
            ],
        )

    def send_email_confirmation(self, to_email: str, token: str) -> bool:
        return self._send(
            to_email,
            "Confirm your email address",
            [
                "Thanks for signing up. Please confirm your email address.",
                f"This link expires in {self.confirmation_ttl_hours} hours.",
            ],
            link=f"{self.base_url}/confirm-email?token={token}",
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._send(
            to_email,
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link expires in {self.reset_ttl_minutes} minutes.",
                "If you did not request this, you can ignore this email.",
            ],
            link=f"{self.base_url}/reset-password?token={token}",
        )
