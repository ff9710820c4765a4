import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from sesam import app as app_module
from sesam.api import schemas


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""

    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example")
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS")
        importlib.reload(app_module)


def test_security_headers_and_health(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "no-store" in response.headers["Cache-Control"]


def test_cors_allows_configured_origin_with_credentials(fresh_app):
    client = TestClient(fresh_app)
    response = client.options(
        "/auth/login",
        headers={
            "Origin": "https://app.example",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.headers["access-control-allow-origin"] == "https://app.example"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_cors_rejects_other_origin(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "https://evil.example"})

    assert "access-control-allow-origin" not in response.headers


def test_envelope_status_validation():
    with pytest.raises(ValidationError):
        schemas.Envelope(status="maybe")


def test_register_request_normalizes_fields():
    request = schemas.RegisterRequest(
        name="  Al\u200bice ", email=" Alice@Example.COM ", password="longpassword1"
    )

    assert request.name == "Alice"
    assert request.email == "alice@example.com"


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "A", "email": "no-at-sign", "password": "longpassword1"},
        {"name": "A", "email": "a@localhost", "password": "longpassword1"},
        {"name": " ", "email": "a@example.com", "password": "longpassword1"},
        {"name": "A", "email": "a@example.com", "password": "x" * 129},
        {"name": "A", "email": "a@example.com", "password": ""},
    ],
)
def test_register_request_rejects_bad_input(payload):
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(**payload)


def test_reset_and_refresh_aliases():
    reset = schemas.ResetPasswordRequest(token="t", newPassword="longpassword1")
    by_name = schemas.ResetPasswordRequest(token="t", new_password="longpassword1")
    refresh = schemas.RefreshTokenRequest.model_validate({"refreshToken": "abc"})

    assert reset.new_password == by_name.new_password == "longpassword1"
    assert refresh.refresh_token == "abc"
    assert schemas.RefreshTokenRequest().refresh_token is None
