import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sesam.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    """EmailSender double that records every message it is asked to send."""

    def __init__(self, *, fail: bool = False, result: bool = True, delay: float = 0.0):
        self.fail = fail
        self.result = result
        self.delay = delay
        self.verifications: list[tuple[str, str, str | None]] = []
        self.resets: list[tuple[str, str]] = []

    async def _deliver(self) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("smtp unavailable")
        return self.result

    async def send_verification_email(self, email, token, name=None):
        self.verifications.append((email, token, name))
        return await self._deliver()

    async def send_password_reset_email(self, email, token):
        self.resets.append((email, token))
        return await self._deliver()

    @property
    def last_verification_token(self) -> str:
        return self.verifications[-1][1]

    @property
    def last_reset_token(self) -> str:
        return self.resets[-1][1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
