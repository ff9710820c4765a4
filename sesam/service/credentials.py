from __future__ import annotations

import asyncio
import math
import secrets
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from sesam.config import Settings
from sesam.logging import get_logger, redact_email
from sesam.service.errors import (
    AlreadyVerifiedError,
    CooldownError,
    InvalidOrExpiredTokenError,
    NotFoundError,
)
from sesam.service.passwords import hash_password
from sesam.storage.models import ResetTicket, UserMatch, UserRecord, VerificationTicket, utcnow

logger = get_logger(__name__)

# 32 random bytes, hex encoded
TICKET_TOKEN_BYTES = 32

# Fields a re-registration may overwrite on a pending account
_PROFILE_FIELDS = frozenset({"name", "password_hash"})


class UserStore(Protocol):
    def create(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: str = "user",
        is_verified: bool = False,
    ) -> UserRecord: ...

    def find_by_email(self, email: str) -> Optional[UserRecord]: ...

    def find_by_id(self, user_id: str) -> Optional[UserRecord]: ...

    def find_by_verification_token(
        self, token: str, now: datetime
    ) -> Optional[UserRecord]: ...

    def find_by_reset_token(self, token: str, now: datetime) -> Optional[UserRecord]: ...

    def update_by_id_if_match(
        self, user_id: str, match: UserMatch, patch: Mapping[str, Any]
    ) -> Optional[UserRecord]: ...

    def update_role(self, user_id: str, role: str) -> Optional[UserRecord]: ...


class EmailSender(Protocol):
    async def send_verification_email(
        self, email: str, token: str, name: Optional[str] = None
    ) -> bool: ...

    async def send_password_reset_email(self, email: str, token: str) -> bool: ...


def generate_ticket_token() -> str:
    return secrets.token_hex(TICKET_TOKEN_BYTES)


class CredentialLifecycleManager:
    """Issue and atomically consume verification and password-reset tickets.

    Consumption is a single conditional update keyed on the token and its
    expiry, so two requests racing on one ticket cannot both succeed.
    Notification is best-effort: a failed or slow email never rolls back the
    ticket that was just stored.
    """

    def __init__(
        self,
        store: UserStore,
        email_sender: EmailSender,
        *,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        resend_cooldown: timedelta = timedelta(minutes=15),
        email_timeout: timedelta = timedelta(seconds=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.email_sender = email_sender
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.resend_cooldown = resend_cooldown
        self.email_timeout = email_timeout
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: UserStore,
        email_sender: EmailSender,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "CredentialLifecycleManager":
        return cls(
            store,
            email_sender,
            verification_ttl=settings.verification_token_ttl,
            reset_ttl=settings.reset_token_ttl,
            resend_cooldown=settings.email_resend_cooldown,
            email_timeout=settings.email_send_timeout,
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    def cooldown_remaining(self, user: UserRecord, now: datetime) -> int:
        """Whole minutes left before another verification email may go out."""
        if user.last_verification_sent_at is None:
            return 0
        left = self.resend_cooldown - (now - user.last_verification_sent_at)
        if left.total_seconds() <= 0:
            return 0
        return max(1, math.ceil(left.total_seconds() / 60))

    async def _notify(self, kind: str, send: Awaitable[bool], user_id: str) -> bool:
        try:
            delivered = await asyncio.wait_for(
                send, timeout=self.email_timeout.total_seconds()
            )
        except asyncio.TimeoutError:
            logger.warning("email_send_timeout", kind=kind, user_id=user_id)
            return False
        except Exception as exc:
            logger.warning(
                "email_send_failed", kind=kind, user_id=user_id, error=str(exc)
            )
            return False
        if delivered is False:
            logger.warning("email_send_failed", kind=kind, user_id=user_id)
            return False
        return True

    async def issue_verification(
        self, email: str, *, profile: Optional[Mapping[str, Any]] = None
    ) -> VerificationTicket:
        """Store a fresh verification ticket and email its link.

        ``profile`` may carry ``name``/``password_hash`` replacements that are
        written in the same update as the ticket (pending re-registration).
        Any previous ticket is superseded.
        """
        profile = dict(profile or {})
        unknown = set(profile) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unsupported profile fields: {sorted(unknown)}")

        user = self.store.find_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        if user.is_verified:
            raise AlreadyVerifiedError("Email is already verified")
        now = self._now()
        remaining = self.cooldown_remaining(user, now)
        if remaining:
            logger.info(
                "verification_cooldown_active",
                user_id=user.id,
                remaining_minutes=remaining,
            )
            raise CooldownError(remaining)

        ticket = VerificationTicket(
            token=generate_ticket_token(),
            expires_at=now + self.verification_ttl,
            issued_at=now,
        )
        updated = self.store.update_by_id_if_match(
            user.id,
            UserMatch(is_verified=False),
            {**profile, "verification": ticket, "last_verification_sent_at": now},
        )
        if updated is None:
            # Verified (or removed) between the read and the write
            raise AlreadyVerifiedError("Email is already verified")
        logger.info(
            "verification_ticket_issued",
            user_id=updated.id,
            email=redact_email(updated.email),
            profile_overwritten=bool(profile),
        )
        await self._notify(
            "verification",
            self.email_sender.send_verification_email(
                updated.email, ticket.token, updated.name
            ),
            updated.id,
        )
        return ticket

    async def consume_verification(self, token: str) -> UserRecord:
        if not token:
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")
        now = self._now()
        user = self.store.find_by_verification_token(token, now)
        updated = None
        if user is not None:
            updated = self.store.update_by_id_if_match(
                user.id,
                UserMatch(verification_token=token, active_at=now),
                {"verification": None, "is_verified": True},
            )
        if updated is None:
            logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")
        logger.info("email_verified", user_id=updated.id)
        return updated

    async def issue_reset(self, email: str) -> ResetTicket:
        user = self.store.find_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email", email=redact_email(email))
            raise NotFoundError("User not found")
        now = self._now()
        ticket = ResetTicket(
            token=generate_ticket_token(), expires_at=now + self.reset_ttl
        )
        updated = self.store.update_by_id_if_match(
            user.id, UserMatch(), {"reset": ticket}
        )
        if updated is None:
            raise NotFoundError("User not found")
        logger.info("password_reset_requested", user_id=updated.id)
        await self._notify(
            "password_reset",
            self.email_sender.send_password_reset_email(updated.email, ticket.token),
            updated.id,
        )
        return ticket

    async def consume_reset(self, token: str, new_password: str) -> UserRecord:
        if not token:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")
        now = self._now()
        user = self.store.find_by_reset_token(token, now)
        updated = None
        if user is not None:
            updated = self.store.update_by_id_if_match(
                user.id,
                UserMatch(reset_token=token, active_at=now),
                {"reset": None, "password_hash": hash_password(new_password)},
            )
        if updated is None:
            logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")
        logger.info("password_reset_completed", user_id=updated.id)
        return updated
