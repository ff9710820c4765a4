from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Optional, Union, overload

from sesam.config import BoundedRefresh, RefreshPolicy, Settings, SlidingRefresh
from sesam.logging import get_logger
from sesam.service.errors import (
    ExpiredTokenError,
    InvalidSignatureError,
    MaxLifetimeExceededError,
)
from sesam.storage.models import utcnow

logger = get_logger(__name__)

KeyRole = Literal["access", "refresh"]


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    role: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenClaims:
    user_id: str
    role: str
    original_issued_at: datetime
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    # Seconds until the refresh token expires; only set by bounded rotations.
    refresh_remaining: Optional[int] = None


def _to_ts(value: datetime) -> int:
    return int(value.timestamp())


def _from_ts(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenLifecycleManager:
    """Issue, verify and rotate HS256-signed access/refresh token pairs.

    Access and refresh tokens are signed with distinct secrets and carry a
    ``token_type`` claim, so neither can be replayed as the other. Refresh
    tokens embed ``oiat`` (original issued-at), the anchor used by
    :class:`~sesam.config.BoundedRefresh` to cap total session lifetime.
    Nothing is persisted: validity is decided by signature and timestamps.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        policy: RefreshPolicy,
        issuer: str = "sesam",
        audience: str = "sesam-clients",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("signing secrets must be non-empty")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must be distinct")
        self._secrets = {
            "access": access_secret.encode(),
            "refresh": refresh_secret.encode(),
        }
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.policy = policy
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "TokenLifecycleManager":
        return cls(
            settings.jwt_secret,
            settings.refresh_token_secret,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
            policy=settings.refresh_policy,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    def _now(self) -> datetime:
        # Claims carry whole seconds; keep in-memory values consistent with them
        return self._clock().astimezone(timezone.utc).replace(microsecond=0)

    # -- encoding ----------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key_role: KeyRole, signing_input: str) -> str:
        signature = hmac.new(
            self._secrets[key_role], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _encode_jwt(self, key_role: KeyRole, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key_role, signing_input)}"

    def _decode_jwt(self, token: str, key_role: KeyRole) -> dict[str, Any]:
        """Return the verified payload; raise ``InvalidSignatureError`` otherwise.

        Expiry is not checked here.
        """
        # Tokens are base64url segments; anything else never reaches the decoder
        if not isinstance(token, str) or not token.isascii():
            raise InvalidSignatureError("Malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignatureError("Malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed", key_role=key_role)
            raise InvalidSignatureError("Malformed token")
        # Pin the algorithm to block alg=none and key-confusion tricks
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", key_role=key_role)
            raise InvalidSignatureError("Unsupported token algorithm")

        expected_sig = self._sign(key_role, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignatureError("Invalid token signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignatureError("Malformed token")
        if not isinstance(payload, dict):
            raise InvalidSignatureError("Malformed token")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidSignatureError("Token issuer or audience mismatch")
        if payload.get("token_type") != key_role:
            raise InvalidSignatureError("Wrong token type")
        required = ("sub", "role", "iat", "exp")
        if key_role == "refresh":
            required += ("oiat",)
        if any(not isinstance(payload.get(name), (str, int)) for name in required):
            raise InvalidSignatureError("Token is missing required claims")
        return payload

    # -- public operations -------------------------------------------------

    def _build_pair(
        self,
        user_id: str,
        role: str,
        now: datetime,
        original_issued_at: datetime,
        refresh_expires_at: datetime,
        refresh_remaining: Optional[int] = None,
    ) -> TokenPair:
        access_expires_at = now + self.access_ttl
        common = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "role": role,
            "iat": _to_ts(now),
        }
        access_token = self._encode_jwt(
            "access",
            {**common, "token_type": "access", "exp": _to_ts(access_expires_at)},
        )
        refresh_token = self._encode_jwt(
            "refresh",
            {
                **common,
                "token_type": "refresh",
                "oiat": _to_ts(original_issued_at),
                "exp": _to_ts(refresh_expires_at),
            },
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            refresh_remaining=refresh_remaining,
        )

    def issue_initial(self, user_id: str, role: str) -> TokenPair:
        now = self._now()
        refresh_expires_at = now + self.refresh_ttl
        remaining = None
        if isinstance(self.policy, BoundedRefresh):
            refresh_expires_at = min(refresh_expires_at, now + self.policy.max_lifetime)
            remaining = int((refresh_expires_at - now).total_seconds())
        pair = self._build_pair(
            user_id, role, now, now, refresh_expires_at, refresh_remaining=remaining
        )
        logger.info("tokens_issued", user_id=user_id)
        return pair

    @overload
    def verify(self, token: str, key_role: Literal["access"]) -> AccessTokenClaims: ...

    @overload
    def verify(self, token: str, key_role: Literal["refresh"]) -> RefreshTokenClaims: ...

    def verify(
        self, token: str, key_role: KeyRole
    ) -> Union[AccessTokenClaims, RefreshTokenClaims]:
        """Decode ``token`` signed with the ``key_role`` secret.

        Raises ``InvalidSignatureError`` for anything forged, malformed or of
        the wrong type, and ``ExpiredTokenError`` once ``exp`` has passed. In
        bounded mode an expired refresh token whose absolute lifetime is used
        up raises ``MaxLifetimeExceededError`` instead.
        """
        if key_role not in self._secrets:
            raise ValueError(f"unknown key role: {key_role}")
        payload = self._decode_jwt(token, key_role)
        now = self._now()
        try:
            issued_at = _from_ts(payload["iat"])
            expires_at = _from_ts(payload["exp"])
            original_issued_at = (
                _from_ts(payload["oiat"]) if key_role == "refresh" else None
            )
        except (TypeError, ValueError, OverflowError, OSError):
            raise InvalidSignatureError("Token timestamps are invalid")

        if expires_at <= now:
            if (
                original_issued_at is not None
                and isinstance(self.policy, BoundedRefresh)
                and original_issued_at + self.policy.max_lifetime <= now
            ):
                raise MaxLifetimeExceededError("Session maximum lifetime exceeded")
            raise ExpiredTokenError("Token has expired")

        if original_issued_at is None:
            return AccessTokenClaims(
                user_id=str(payload["sub"]),
                role=str(payload["role"]),
                issued_at=issued_at,
                expires_at=expires_at,
            )
        return RefreshTokenClaims(
            user_id=str(payload["sub"]),
            role=str(payload["role"]),
            original_issued_at=original_issued_at,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def rotate(
        self, claims: RefreshTokenClaims, *, role: Optional[str] = None
    ) -> TokenPair:
        """Mint a fresh pair from verified refresh claims.

        Sliding mode restarts the refresh window at now. Bounded mode keeps
        the original issuance anchor, never extends past
        ``original_issued_at + max_lifetime`` and reports the remaining
        seconds on the returned pair.
        """
        now = self._now()
        role = role or claims.role
        if isinstance(self.policy, SlidingRefresh):
            pair = self._build_pair(
                claims.user_id, role, now, now, now + self.refresh_ttl
            )
            logger.info("tokens_rotated", user_id=claims.user_id, policy="sliding")
            return pair

        ceiling = claims.original_issued_at + self.policy.max_lifetime
        remaining = ceiling - now
        if remaining.total_seconds() <= 0:
            logger.info("refresh_max_lifetime_exceeded", user_id=claims.user_id)
            raise MaxLifetimeExceededError("Session maximum lifetime exceeded")
        refresh_expires_at = min(ceiling, claims.expires_at, now + self.refresh_ttl)
        pair = self._build_pair(
            claims.user_id,
            role,
            now,
            claims.original_issued_at,
            refresh_expires_at,
            refresh_remaining=int((refresh_expires_at - now).total_seconds()),
        )
        logger.info(
            "tokens_rotated",
            user_id=claims.user_id,
            policy="bounded",
            remaining_seconds=pair.refresh_remaining,
        )
        return pair
