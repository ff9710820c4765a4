from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from sesam.config import Settings
from sesam.logging import get_logger, redact_email

logger = get_logger(__name__)

_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f5d8a; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>This link will expire in {expires}.</p>
        <div class="footer">
            <p>{app_name}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_LAYOUT = """{heading}

{intro}

{url}

This link will expire in {expires}.

---
{app_name}
"""


def describe_duration(value: timedelta) -> str:
    """Human wording for a ticket lifetime, e.g. ``24 hours`` or ``7 days``."""
    seconds = max(1, int(value.total_seconds()))
    if seconds % 86400 == 0 and seconds >= 2 * 86400:
        amount, unit = seconds // 86400, "day"
    elif seconds % 3600 == 0:
        amount, unit = seconds // 3600, "hour"
    elif seconds % 60 == 0:
        amount, unit = seconds // 60, "minute"
    else:
        amount, unit = seconds, "second"
    return f"{amount} {unit}" if amount == 1 else f"{amount} {unit}s"


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    heading: str
    intro: str
    action: str

    def render(
        self,
        *,
        url: str,
        app_name: str,
        expires_in: timedelta,
        name: Optional[str] = None,
    ):
        """Return ``(subject, html_body, text_body)``.

        Values are HTML-escaped in the HTML body only; the template strings
        themselves are trusted.
        """
        values = {
            "url": url,
            "app_name": app_name,
            "name": name or "there",
            "expires": describe_duration(expires_in),
        }
        escaped = {key: html.escape(value, quote=True) for key, value in values.items()}
        html_fields = {
            **escaped,
            "heading": self.heading.format(**escaped),
            "intro": self.intro.format(**escaped),
            "action": self.action,
        }
        text_fields = {
            **values,
            "heading": self.heading.format(**values),
            "intro": self.intro.format(**values),
        }
        return (
            self.subject.format(**values),
            _HTML_LAYOUT.format(**html_fields),
            _TEXT_LAYOUT.format(**text_fields),
        )


@dataclass(frozen=True)
class EmailTemplates:
    """Per-instance template set handed to :class:`EmailService`."""

    verification: EmailTemplate = EmailTemplate(
        subject="Verify your {app_name} email",
        heading="Hi {name}, verify your email",
        intro="Thanks for signing up! Please verify your email address using the link below.",
        action="Verify Email",
    )
    password_reset: EmailTemplate = EmailTemplate(
        subject="Reset your {app_name} password",
        heading="Reset your password",
        intro=(
            "We received a request to reset your password. Use the link below to "
            "choose a new one. If you didn't request this, you can safely ignore this email."
        ),
        action="Reset Password",
    )


class EmailService:
    """Email service for sending verification and password reset links.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when not configured (dev mode)

    SMTP calls are blocking and run in a worker thread from the async
    ``send_*`` methods.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Sesam",
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        templates: Optional[EmailTemplates] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.templates = templates or EmailTemplates()

    @classmethod
    def from_settings(
        cls, settings: Settings, templates: Optional[EmailTemplates] = None
    ) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            timeout=settings.email_send_timeout.total_seconds(),
            verification_ttl=settings.verification_token_ttl,
            reset_ttl=settings.reset_token_ttl,
            templates=templates,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(e)
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    async def send_verification_email(
        self, email: str, token: str, name: Optional[str] = None
    ) -> bool:
        """Send the email verification link."""
        url = f"{self.base_url}/auth/verify-email?token={token}"
        subject, html_body, text_body = self.templates.verification.render(
            url=url,
            app_name=self.from_name,
            expires_in=self.verification_ttl,
            name=name,
        )
        return await asyncio.to_thread(
            self._send_email, email, subject, html_body, text_body
        )

    async def send_password_reset_email(self, email: str, token: str) -> bool:
        """Send the password reset link."""
        url = f"{self.base_url}/auth/reset-password?token={token}"
        subject, html_body, text_body = self.templates.password_reset.render(
            url=url, app_name=self.from_name, expires_in=self.reset_ttl
        )
        return await asyncio.to_thread(
            self._send_email, email, subject, html_body, text_body
        )
