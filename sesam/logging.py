from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

# Signed session tokens (header.payload.signature) and 64-hex ticket tokens
_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_TICKET_PATTERN = re.compile(r"\b[0-9a-f]{64}\b")

_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie")
_ADDRESS_KEYS = ("email", "to")


def _truthy(value: str) -> bool:
    return value.lower() in {"1", "true", "yes", "on"}


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh request log context tagged with a correlation ID.

    Any context bound by a previous request on this task is dropped.
    """
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def bind_principal(user_id: str, role: str) -> None:
    """Tag the rest of the request's log entries with the authenticated user."""
    structlog.contextvars.bind_contextvars(user_id=user_id, role=role)


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return value[:4] + "***"


def _scrub_text(value: str) -> str:
    value = _JWT_PATTERN.sub("<jwt>", value)
    return _TICKET_PATTERN.sub("<ticket>", value)


def redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep secrets and addresses out of log output.

    Credential-named fields are masked down to a short prefix, address fields
    keep only their domain, and any session or ticket token embedded in
    another string (an exception message, say) is replaced by a placeholder.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lower_key = key.lower()
        if any(name in lower_key for name in _CREDENTIAL_KEYS):
            event_dict[key] = _mask(value)
        elif lower_key in _ADDRESS_KEYS or "email" in lower_key:
            event_dict[key] = redact_email(value)
        else:
            event_dict[key] = _scrub_text(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_truthy(os.getenv("LOG_JSON", "true")),
    development_mode=_truthy(os.getenv("LOG_DEV_MODE", "false")),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
