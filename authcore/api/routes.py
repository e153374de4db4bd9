from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from authcore.api.schemas import (
    AccessTokenResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenIdentityResponse,
    TokenRefreshRequest,
    TokenVerifyRequest,
    UserResponse,
)
from authcore.logging import get_logger
from authcore.service.auth import AuthContext, AuthResult
from authcore.service.errors import ForbiddenError
from authcore.service.runtime import Runtime
from authcore.storage.models import ROLE_ADMIN

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

# Same body whether or not the address exists
_RESET_REQUESTED_MESSAGE = "if the email exists, a password reset link has been sent"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise _http_error("unavailable", "service not initialised", status_code=503)
    return runtime


async def get_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.is_admin:
        raise ForbiddenError("admin role required")
    return principal


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse(**result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create a new account and start its session.

    Raises:
        403: If signup is disabled, or an admin role is requested without
            admin self-registration enabled
        409: If the email is already registered
    """
    settings = runtime.settings
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    if body.role == ROLE_ADMIN and not settings.allow_admin_self_registration:
        raise _http_error("forbidden", "admin registration not permitted", status_code=403)
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated
        423: If the account is locked after repeated failures
    """
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    access_token = await runtime.auth.refresh_access_token(body.refresh_token)
    return Envelope(status="ok", data=AccessTokenResponse(access_token=access_token))


@router.post("/logout", response_model=Envelope)
async def logout(
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/profile", response_model=Envelope)
async def get_profile(
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    profile = await runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=UserResponse(**profile))


@router.put("/profile", response_model=Envelope)
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    profile = await runtime.auth.update_profile(
        principal.user_id, first_name=body.first_name, last_name=body.last_name
    )
    return Envelope(status="ok", data=UserResponse(**profile))


@router.post("/password/change", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the caller's password. Ends the current refresh session."""
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="password changed"))


@router.post("/password/forgot", response_model=Envelope)
async def forgot_password(body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_RESET_REQUESTED_MESSAGE))


@router.post("/password/reset", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)):
    """Set a new password using a reset token. Tokens are single-use."""
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password reset"))


@router.post("/verify", response_model=Envelope)
async def verify(body: TokenVerifyRequest, runtime: Runtime = Depends(get_runtime)):
    identity = await runtime.auth.verify_access_token(body.token)
    return Envelope(status="ok", data=TokenIdentityResponse(**identity))


@router.post("/users/{user_id}/deactivate", response_model=Envelope)
async def deactivate_user(
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    profile = await runtime.auth.deactivate_user(user_id)
    logger.info("admin_deactivated_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=UserResponse(**profile))
