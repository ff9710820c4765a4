from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VerificationTicket:
    token: str
    expires_at: datetime
    issued_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class ResetTicket:
    token: str
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class UserRecord:
    id: str
    email: str
    name: str
    password_hash: str
    role: str = "user"
    is_verified: bool = False
    verification: Optional[VerificationTicket] = None
    reset: Optional[ResetTicket] = None
    last_verification_sent_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: str = "user",
        is_verified: bool = False,
    ) -> "UserRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            password_hash=password_hash,
            role=role,
            is_verified=is_verified,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class UserMatch:
    """Predicate for an atomic conditional update.

    Every field left as ``None`` is ignored. ``active_at`` requires the ticket
    selected by ``verification_token``/``reset_token`` to expire strictly
    after that instant.
    """

    verification_token: Optional[str] = None
    reset_token: Optional[str] = None
    active_at: Optional[datetime] = None
    is_verified: Optional[bool] = None

    def matches(self, user: UserRecord) -> bool:
        if self.is_verified is not None and user.is_verified != self.is_verified:
            return False
        if self.verification_token is not None:
            ticket = user.verification
            if ticket is None or ticket.token != self.verification_token:
                return False
            if self.active_at is not None and not ticket.is_active(self.active_at):
                return False
        if self.reset_token is not None:
            reset = user.reset
            if reset is None or reset.token != self.reset_token:
                return False
            if self.active_at is not None and not reset.is_active(self.active_at):
                return False
        return True


# Fields a conditional update may patch
PATCHABLE_FIELDS = frozenset(
    {
        "name",
        "password_hash",
        "role",
        "is_verified",
        "verification",
        "reset",
        "last_verification_sent_at",
    }
)
