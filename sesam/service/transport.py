from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from starlette.requests import HTTPConnection
from starlette.responses import Response

from sesam.config import Settings
from sesam.service.tokens import TokenPair

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
EXPIRY_HEADER = "X-Token-Expiry"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class CookieSpec:
    name: str
    value: str
    max_age: int
    expires: datetime
    path: str = "/"
    domain: Optional[str] = None
    secure: bool = True
    httponly: bool = True
    samesite: str = "lax"


class SessionTransport:
    """Carry token pairs to and from the client as httpOnly cookies.

    Cookie lifetimes follow the signed tokens: the access cookie lives for
    the access TTL and the refresh cookie for exactly as long as the refresh
    token it carries.
    """

    def __init__(
        self,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        domain: Optional[str] = None,
        path: str = "/",
        secure: bool = True,
    ) -> None:
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.domain = domain
        self.path = path
        self.secure = secure

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionTransport":
        return cls(
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
            domain=settings.cookie_domain,
            path=settings.cookie_path,
            secure=settings.secure_cookies,
        )

    def _cookie(self, name: str, value: str, max_age: int, expires: datetime) -> CookieSpec:
        return CookieSpec(
            name=name,
            value=value,
            max_age=max_age,
            expires=expires,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
        )

    def encode(
        self, tokens: TokenPair, remaining_seconds_for_refresh: Optional[int] = None
    ) -> List[CookieSpec]:
        if remaining_seconds_for_refresh is None:
            remaining_seconds_for_refresh = tokens.refresh_remaining
        if remaining_seconds_for_refresh is None:
            refresh_max_age = int(self.refresh_ttl.total_seconds())
        else:
            refresh_max_age = max(0, int(remaining_seconds_for_refresh))
        return [
            self._cookie(
                ACCESS_COOKIE,
                tokens.access_token,
                int(self.access_ttl.total_seconds()),
                tokens.access_expires_at,
            ),
            self._cookie(
                REFRESH_COOKIE,
                tokens.refresh_token,
                refresh_max_age,
                tokens.refresh_expires_at,
            ),
        ]

    def clear(self) -> List[CookieSpec]:
        return [
            self._cookie(ACCESS_COOKIE, "", 0, _EPOCH),
            self._cookie(REFRESH_COOKIE, "", 0, _EPOCH),
        ]

    @staticmethod
    def _bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def extract(self, request: HTTPConnection) -> Optional[str]:
        """Access token from the cookie, else from ``Authorization: Bearer``."""
        token = request.cookies.get(ACCESS_COOKIE)
        if token:
            return token
        return self._bearer(request.headers.get("authorization"))

    def extract_refresh(self, request: HTTPConnection) -> Optional[str]:
        return request.cookies.get(REFRESH_COOKIE) or None

    def expiry_header(self) -> dict[str, str]:
        return {EXPIRY_HEADER: str(int(self.access_ttl.total_seconds()))}

    def apply(self, response: Response, cookies: Iterable[CookieSpec]) -> Response:
        for cookie in cookies:
            response.set_cookie(
                key=cookie.name,
                value=cookie.value,
                max_age=cookie.max_age,
                expires=cookie.expires,
                path=cookie.path,
                domain=cookie.domain,
                secure=cookie.secure,
                httponly=cookie.httponly,
                samesite=cookie.samesite,
            )
        return response
