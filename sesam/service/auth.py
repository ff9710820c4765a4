from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sesam.config import Settings
from sesam.logging import get_logger, redact_email
from sesam.service.credentials import CredentialLifecycleManager, UserStore
from sesam.service.errors import (
    DuplicateEmailError,
    ForbiddenError,
    InvalidCredentialsError,
    UnauthorizedError,
    ValidationError,
)
from sesam.service.passwords import hash_password, verify_password
from sesam.service.tokens import TokenLifecycleManager, TokenPair
from sesam.service.transport import CookieSpec, SessionTransport
from sesam.storage.errors import ConstraintViolation
from sesam.storage.models import UserRecord

logger = get_logger(__name__)

ROLES = ("user", "admin")


@dataclass
class AuthContext:
    user_id: str
    role: str


@dataclass
class AuthResult:
    user: UserRecord
    tokens: TokenPair
    cookies: List[CookieSpec]


class AuthOrchestrator:
    """Register, login, verify, reset and refresh flows over the lifecycle managers.

    A user is created unverified and becomes verified exactly once, by
    consuming a verification ticket. Only verified users receive tokens.
    """

    def __init__(
        self,
        store: UserStore,
        tokens: TokenLifecycleManager,
        credentials: CredentialLifecycleManager,
        transport: SessionTransport,
        *,
        password_min_length: int = 8,
        reregister_overwrites_pending: bool = True,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.credentials = credentials
        self.transport = transport
        self.password_min_length = password_min_length
        self.reregister_overwrites_pending = reregister_overwrites_pending

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: UserStore,
        tokens: TokenLifecycleManager,
        credentials: CredentialLifecycleManager,
        transport: SessionTransport,
    ) -> "AuthOrchestrator":
        return cls(
            store,
            tokens,
            credentials,
            transport,
            password_min_length=settings.password_min_length,
            reregister_overwrites_pending=settings.reregister_overwrites_pending,
        )

    def _check_password(self, password: str) -> None:
        if len(password or "") < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters",
                detail={"field": "password"},
            )

    def _session(self, user: UserRecord, tokens: TokenPair) -> AuthResult:
        return AuthResult(user=user, tokens=tokens, cookies=self.transport.encode(tokens))

    async def register(self, name: str, email: str, password: str) -> UserRecord:
        """Create an unverified account, or re-issue verification for a pending one.

        A pending account's name and password are replaced in the same update
        as its new ticket unless ``reregister_overwrites_pending`` is off.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required", detail={"field": "name"})
        self._check_password(password)

        existing = self.store.find_by_email(email)
        if existing is not None:
            if existing.is_verified:
                raise DuplicateEmailError("Email is already registered")
            profile = None
            if self.reregister_overwrites_pending:
                profile = {"name": name, "password_hash": hash_password(password)}
            await self.credentials.issue_verification(existing.email, profile=profile)
            logger.info(
                "pending_registration_reissued",
                user_id=existing.id,
                profile_overwritten=profile is not None,
            )
            return self.store.find_by_id(existing.id) or existing

        try:
            user = self.store.create(email, name, hash_password(password))
        except ConstraintViolation:
            raise DuplicateEmailError("Email is already registered")
        logger.info("user_registered", user_id=user.id, email=redact_email(user.email))
        await self.credentials.issue_verification(user.email)
        return self.store.find_by_id(user.id) or user

    async def login(self, email: str, password: str) -> AuthResult:
        user = self.store.find_by_email(email)
        if not verify_password(user.password_hash if user else None, password):
            logger.info("login_failed", email=redact_email(email))
            raise InvalidCredentialsError("Invalid email or password")
        if not user.is_verified:
            logger.info("login_unverified", user_id=user.id)
            raise UnauthorizedError(
                "Please verify your email before logging in",
                detail={"reason": "email_not_verified"},
            )
        tokens = self.tokens.issue_initial(user.id, user.role)
        logger.info("login_succeeded", user_id=user.id)
        return self._session(user, tokens)

    async def verify_email(self, token: str) -> UserRecord:
        return await self.credentials.consume_verification(token)

    async def resend_verification(self, email: str) -> None:
        await self.credentials.issue_verification(email)

    async def forgot_password(self, email: str) -> None:
        await self.credentials.issue_reset(email)

    async def reset_password(self, token: str, new_password: str) -> UserRecord:
        self._check_password(new_password)
        return await self.credentials.consume_reset(token, new_password)

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        """Rotate a refresh token into a new pair.

        Any failure here means the client session is over; callers clear the
        session cookies.
        """
        if not refresh_token:
            raise UnauthorizedError("Refresh token missing")
        claims = self.tokens.verify(refresh_token, "refresh")
        user = self.store.find_by_id(claims.user_id)
        if user is None:
            logger.warning("refresh_user_missing", user_id=claims.user_id)
            raise UnauthorizedError("User no longer exists")
        tokens = self.tokens.rotate(claims, role=user.role)
        return self._session(user, tokens)

    def logout(self) -> List[CookieSpec]:
        return self.transport.clear()

    def authenticate(
        self, access_token: Optional[str], *, required_role: Optional[str] = None
    ) -> AuthContext:
        if not access_token:
            raise UnauthorizedError("Not authenticated")
        claims = self.tokens.verify(access_token, "access")
        user = self.store.find_by_id(claims.user_id)
        if user is None:
            raise UnauthorizedError("User no longer exists")
        if required_role and user.role != required_role:
            raise ForbiddenError("Insufficient permissions")
        return AuthContext(user_id=user.id, role=user.role)
