from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, Response

from sesam.api.error_handling import service_error_response
from sesam.api.schemas import (
    EmailRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    UserResponse,
)
from sesam.logging import bind_principal, get_logger
from sesam.service.auth import AuthContext, AuthResult
from sesam.service.errors import NotFoundError, ServiceError
from sesam.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()


async def get_user(request: Request) -> AuthContext:
    """Resolve the caller from the access cookie or a Bearer header."""
    runtime = get_runtime()
    token = runtime.transport.extract(request)
    principal = runtime.auth.authenticate(token)
    bind_principal(principal.user_id, principal.role)
    return principal


async def get_admin_user(request: Request) -> AuthContext:
    runtime = get_runtime()
    token = runtime.transport.extract(request)
    principal = runtime.auth.authenticate(token, required_role="admin")
    bind_principal(principal.user_id, principal.role)
    return principal


def _session_envelope(response: Response, result: AuthResult) -> Envelope:
    transport = get_runtime().transport
    transport.apply(response, result.cookies)
    response.headers.update(transport.expiry_header())
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=UserResponse.from_record(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            access_expires_at=result.tokens.access_expires_at,
            refresh_expires_at=result.tokens.refresh_expires_at,
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and email a verification link.

    Re-registering an email that is still pending verification re-sends the
    link, subject to the resend cooldown.

    Raises:
        400: duplicate_email, cooldown or validation_error
    """
    runtime = get_runtime()
    user = await runtime.auth.register(body.name, body.email, body.password)
    return Envelope(status="ok", data=UserResponse.from_record(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password and set the session cookies.

    Raises:
        401: invalid_credentials, or unauthorized while the email is unverified
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return _session_envelope(response, result)


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    await runtime.auth.verify_email(token)
    return Envelope(
        status="ok", data=MessageResponse(message="Email verified successfully")
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok", data=MessageResponse(message="Verification email sent")
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(
        status="ok", data=MessageResponse(message="Password reset email sent")
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(
        status="ok", data=MessageResponse(message="Password reset successfully")
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshTokenRequest] = Body(None),
):
    """Rotate the refresh token.

    The ``refreshToken`` cookie wins over a token in the body. Any failure
    clears both session cookies so the client must log in again.
    """
    runtime = get_runtime()
    token = runtime.transport.extract_refresh(request)
    if not token and body is not None:
        token = body.refresh_token
    try:
        result = await runtime.auth.refresh(token)
    except ServiceError as exc:
        logger.info("refresh_rejected", error_code=exc.error_code)
        failure = service_error_response(exc)
        runtime.transport.apply(failure, runtime.auth.logout())
        return failure
    return _session_envelope(response, result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    runtime = get_runtime()
    runtime.transport.apply(response, runtime.auth.logout())
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.find_by_id(principal.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return Envelope(status="ok", data=UserResponse.from_record(user))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    user = runtime.store.find_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return Envelope(status="ok", data=UserResponse.from_record(user))
