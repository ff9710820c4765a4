from datetime import timedelta

import pytest
from starlette.requests import Request
from starlette.responses import Response

from sesam.config import BoundedRefresh, SlidingRefresh
from sesam.service.tokens import TokenLifecycleManager
from sesam.service.transport import (
    ACCESS_COOKIE,
    EXPIRY_HEADER,
    REFRESH_COOKIE,
    SessionTransport,
)

ACCESS_TTL = timedelta(minutes=15)
REFRESH_TTL = timedelta(days=7)


def _request(headers: dict) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


def _tokens(clock, policy):
    return TokenLifecycleManager(
        "access-secret-one",
        "refresh-secret-two",
        access_ttl=ACCESS_TTL,
        refresh_ttl=REFRESH_TTL,
        policy=policy,
        clock=clock,
    )


@pytest.fixture
def transport():
    return SessionTransport(
        access_ttl=ACCESS_TTL, refresh_ttl=REFRESH_TTL, domain="example.com", secure=True
    )


def test_encode_sliding_pair(transport, clock):
    pair = _tokens(clock, SlidingRefresh()).issue_initial("user-1", "user")

    access, refresh = transport.encode(pair)

    assert (access.name, access.value) == (ACCESS_COOKIE, pair.access_token)
    assert (refresh.name, refresh.value) == (REFRESH_COOKIE, pair.refresh_token)
    assert access.max_age == 900
    assert refresh.max_age == int(REFRESH_TTL.total_seconds())
    assert refresh.expires == pair.refresh_expires_at
    for cookie in (access, refresh):
        assert cookie.httponly and cookie.secure
        assert cookie.samesite == "lax"
        assert cookie.domain == "example.com"


def test_bounded_refresh_cookie_tracks_token_lifetime(transport, clock):
    tokens = _tokens(clock, BoundedRefresh(max_lifetime=REFRESH_TTL))
    pair = tokens.issue_initial("user-1", "user")
    clock.advance(days=6, hours=23)
    rotated = tokens.rotate(tokens.verify(pair.refresh_token, "refresh"))

    _, refresh = transport.encode(rotated)

    assert refresh.max_age == 3600
    assert refresh.expires == rotated.refresh_expires_at


def test_explicit_remaining_overrides_ttl(transport, clock):
    pair = _tokens(clock, SlidingRefresh()).issue_initial("user-1", "user")

    _, refresh = transport.encode(pair, remaining_seconds_for_refresh=120)

    assert refresh.max_age == 120


def test_clear_expires_both_cookies(transport):
    cookies = transport.clear()

    assert {c.name for c in cookies} == {ACCESS_COOKIE, REFRESH_COOKIE}
    assert all(c.value == "" and c.max_age == 0 for c in cookies)
    assert all(c.expires.year == 1970 for c in cookies)


def test_extract_prefers_cookie(transport):
    request = _request(
        {"Cookie": f"{ACCESS_COOKIE}=from-cookie", "Authorization": "Bearer from-header"}
    )

    assert transport.extract(request) == "from-cookie"


def test_extract_falls_back_to_bearer(transport):
    assert transport.extract(_request({"Authorization": "Bearer abc.def.ghi"})) == "abc.def.ghi"
    assert transport.extract(_request({"Authorization": "bearer lower"})) == "lower"


@pytest.mark.parametrize("header", [None, "Basic dXNlcjpwYXNz", "Bearer ", "Bearer"])
def test_extract_without_usable_token(transport, header):
    headers = {"Authorization": header} if header is not None else {}

    assert transport.extract(_request(headers)) is None


def test_extract_refresh_reads_cookie_only(transport):
    assert transport.extract_refresh(_request({"Cookie": f"{REFRESH_COOKIE}=r1"})) == "r1"
    assert transport.extract_refresh(_request({"Authorization": "Bearer r1"})) is None


def test_apply_writes_set_cookie_headers(transport, clock):
    pair = _tokens(clock, SlidingRefresh()).issue_initial("user-1", "user")
    response = Response()

    transport.apply(response, transport.encode(pair))

    set_cookies = response.headers.getlist("set-cookie")
    assert len(set_cookies) == 2
    access_header = next(h for h in set_cookies if h.startswith(f"{ACCESS_COOKIE}="))
    lowered = access_header.lower()
    assert "httponly" in lowered
    assert "secure" in lowered
    assert "samesite=lax" in lowered
    assert "max-age=900" in lowered
    assert "domain=example.com" in lowered


def test_expiry_header(transport):
    assert transport.expiry_header() == {EXPIRY_HEADER: "900"}
