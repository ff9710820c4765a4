from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sesam.config import get_settings, reset_settings_cache
from sesam.logging import get_logger
from sesam.service.auth import AuthOrchestrator
from sesam.service.credentials import CredentialLifecycleManager
from sesam.service.email import EmailService
from sesam.service.tokens import TokenLifecycleManager
from sesam.service.transport import SessionTransport
from sesam.storage.memory import MemoryStore
from sesam.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService.from_settings(self.settings)
        self.tokens = TokenLifecycleManager.from_settings(self.settings)
        self.credentials = CredentialLifecycleManager.from_settings(
            self.settings, self.store, self.email
        )
        self.transport = SessionTransport.from_settings(self.settings)
        self.auth = AuthOrchestrator.from_settings(
            self.settings, self.store, self.tokens, self.credentials, self.transport
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            refresh_policy=type(self.settings.refresh_policy).__name__,
            email_configured=self.email.is_configured,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
