from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Union

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sesam.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SlidingRefresh:
    """Every successful rotation resets the refresh window to a full TTL."""


@dataclass(frozen=True)
class BoundedRefresh:
    """Total session lifetime is capped from the original issuance instant."""

    max_lifetime: timedelta


RefreshPolicy = Union[SlidingRefresh, BoundedRefresh]


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are missing or inconsistent."""

    def __init__(self, message: str, missing: List[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> timedelta:
    """Parse ``30s``/``15m``/``24h``/``7d`` or bare seconds into a timedelta."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("duration must not be a boolean")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"unsupported duration value: {value!r}")
    match = _DURATION_PATTERN.match(value)
    if not match:
        raise ValueError(f"invalid duration '{value}' (expected e.g. 30s, 15m, 24h, 7d)")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit.lower()])


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session lifecycle service."""

    # Token lifecycle
    jwt_secret: str = env_field(..., "JWT_SECRET", description="Access token signing secret")
    refresh_token_secret: str = env_field(
        ..., "REFRESH_TOKEN_SECRET", description="Refresh token signing secret"
    )
    jwt_issuer: str = env_field("sesam", "JWT_ISSUER")
    jwt_audience: str = env_field("sesam-clients", "JWT_AUDIENCE")
    access_token_ttl: timedelta = env_field(timedelta(minutes=15), "ACCESS_TOKEN_TTL")
    refresh_token_ttl: timedelta = env_field(timedelta(days=7), "REFRESH_TOKEN_TTL")
    sliding_refresh: bool = env_field(
        True,
        "SLIDING_REFRESH",
        description="true: each rotation resets the refresh window; false: lifetime capped at REFRESH_TOKEN_TTL",
    )

    # Tickets
    verification_token_ttl: timedelta = env_field(
        timedelta(hours=24), "VERIFICATION_TOKEN_TTL"
    )
    reset_token_ttl: timedelta = env_field(timedelta(hours=1), "RESET_TOKEN_TTL")
    email_resend_cooldown: timedelta = env_field(
        timedelta(minutes=15), "EMAIL_RESEND_COOLDOWN"
    )
    reregister_overwrites_pending: bool = env_field(
        True,
        "REREGISTER_OVERWRITES_PENDING",
        description="Re-registering a pending (unverified) email replaces its name and password",
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)

    # Cookies
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_path: str = env_field("/", "COOKIE_PATH")
    secure_cookies: bool = env_field(True, "SECURE_COOKIES")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins allowed to send credentialed requests",
    )

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/sesam", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets between tests",
    )

    # Email
    app_base_url: str = env_field("http://localhost:8000", "APP_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sesam", "EMAIL_FROM_NAME")
    email_send_timeout: timedelta = env_field(
        timedelta(seconds=10), "EMAIL_SEND_TIMEOUT"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        missing: list[str] = []
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_file_values.get(env_name) is not None:
                merged[name] = env_file_values[env_name]
            elif field.is_required():
                missing.append(env_name)
        if missing:
            logger.error("settings_missing_required", missing=missing)
            raise ConfigurationError(
                f"missing required configuration: {', '.join(missing)}", missing
            )
        return cls(**merged)

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "verification_token_ttl",
        "reset_token_ttl",
        "email_resend_cooldown",
        "email_send_timeout",
        mode="before",
    )
    @classmethod
    def _parse_durations(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "verification_token_ttl",
        "reset_token_ttl",
        "email_send_timeout",
    )
    @classmethod
    def _require_positive(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("duration must be positive")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("cookie_domain", "smtp_host", "smtp_user", "email_from_address")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _check_secrets(self) -> "Settings":
        if not self.jwt_secret or not self.refresh_token_secret:
            raise ValueError("JWT_SECRET and REFRESH_TOKEN_SECRET must be non-empty")
        if self.jwt_secret == self.refresh_token_secret:
            raise ValueError("JWT_SECRET and REFRESH_TOKEN_SECRET must be distinct")
        if self.access_token_ttl >= self.refresh_token_ttl:
            raise ValueError("ACCESS_TOKEN_TTL must be shorter than REFRESH_TOKEN_TTL")
        return self

    @property
    def refresh_policy(self) -> RefreshPolicy:
        if self.sliding_refresh:
            return SlidingRefresh()
        return BoundedRefresh(max_lifetime=self.refresh_token_ttl)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
