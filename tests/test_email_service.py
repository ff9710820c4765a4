import smtplib
from datetime import timedelta

import pytest

from sesam.config import Settings
from sesam.service import email as email_module
from sesam.service.email import (
    EmailService,
    EmailTemplate,
    EmailTemplates,
    describe_duration,
)


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, from_addr, to_addr, message):
        FakeSMTP.sent.append((from_addr, to_addr, message))


def test_templates_render_link_and_name():
    subject, html, text = EmailTemplates().verification.render(
        url="https://app.example/auth/verify-email?token=abc",
        app_name="Sesam",
        expires_in=timedelta(hours=24),
        name="Alice",
    )

    assert subject == "Verify your Sesam email"
    assert "Hi Alice" in html
    assert "https://app.example/auth/verify-email?token=abc" in text
    assert "24 hours" in text


def test_markup_in_name_is_escaped_in_html_only():
    name = '<a href="https://evil.example">click</a>'

    _, html, text = EmailTemplates().verification.render(
        url="https://app.example/auth/verify-email?token=abc&x=1",
        app_name="Sesam",
        expires_in=timedelta(hours=24),
        name=name,
    )

    assert "<a href=\"https://evil.example\">" not in html
    assert "Hi &lt;a href=&quot;https://evil.example&quot;&gt;click&lt;/a&gt;" in html
    assert 'href="https://app.example/auth/verify-email?token=abc&amp;x=1"' in html
    assert f"Hi {name}, verify your email" in text


@pytest.mark.parametrize(
    "ttl,expected",
    [
        (timedelta(hours=1), "1 hour"),
        (timedelta(hours=24), "24 hours"),
        (timedelta(days=3), "3 days"),
        (timedelta(minutes=30), "30 minutes"),
        (timedelta(seconds=90), "90 seconds"),
    ],
)
def test_describe_duration(ttl, expected):
    assert describe_duration(ttl) == expected


def test_custom_template_set():
    templates = EmailTemplates(
        password_reset=EmailTemplate(
            subject="[{app_name}] new password",
            heading="Password help",
            intro="Follow the link within {expires}.",
            action="Go",
        )
    )

    subject, _, text = templates.password_reset.render(
        url="u", app_name="Acme", expires_in=timedelta(minutes=60)
    )

    assert subject == "[Acme] new password"
    assert "Follow the link within 1 hour." in text


async def test_expiry_text_follows_configured_ttls(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    settings = Settings(
        jwt_secret="a",
        refresh_token_secret="b",
        verification_token_ttl="48h",
        reset_token_ttl="30m",
        smtp_host="smtp.example.com",
        email_from_address="noreply@example.com",
    )
    service = EmailService.from_settings(settings)

    await service.send_verification_email("alice@example.com", "tok", "Alice")
    await service.send_password_reset_email("alice@example.com", "tok")

    verification, reset = (message for _, _, message in FakeSMTP.sent)
    assert "This link will expire in 2 days." in verification
    assert "This link will expire in 30 minutes." in reset


async def test_dev_mode_logs_instead_of_sending():
    service = EmailService(base_url="http://localhost:8000/")

    assert not service.is_configured
    assert await service.send_verification_email("alice@example.com", "tok") is True


async def test_smtp_delivery(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        from_email="noreply@example.com",
        base_url="https://app.example",
    )

    assert await service.send_password_reset_email("alice@example.com", "tok123") is True

    (from_addr, to_addr, message) = FakeSMTP.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addr == "alice@example.com"
    assert "https://app.example/auth/reset-password?token=tok123" in message


async def test_smtp_failure_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "service not available")

    monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

    assert await service.send_verification_email("alice@example.com", "tok") is False
