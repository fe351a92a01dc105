from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from authgate.api.schemas import (
    DeviceInfo,
    EmailVerificationConfirm,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PhoneVerificationConfirm,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from authgate.logging import get_logger
from authgate.service.auth import AuthContext
from authgate.service.runtime import get_runtime
from authgate.service.tokens import TokenPair
from authgate.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _device(device_info: Optional[DeviceInfo], request: Request) -> Dict[str, Any]:
    info = device_info.model_dump(exclude_none=True) if device_info else {}
    info.setdefault("user_agent", request.headers.get("User-Agent"))
    return info


def _token_response(user: User, pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        user_id=user.id,
        role=user.role,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        refresh_expires_at=pair.refresh_expires_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    user, pair = await runtime.auth.register(
        body.email,
        body.password,
        body.role,
        phone=body.phone,
        profile=body.profile,
        device_info=_device(body.device_info, request),
        client_ip=_client_ip(request),
    )
    return Envelope(status="ok", data=_token_response(user, pair))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email or phone and password.

    Raises:
        401: invalid credentials
        423: account locked after repeated failures
        429: too many attempts for this identifier
    """
    runtime = get_runtime()
    user, pair = await runtime.auth.login(
        body.identifier,
        body.password,
        device_info=_device(body.device_info, request),
        client_ip=_client_ip(request),
    )
    return Envelope(status="ok", data=_token_response(user, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    user, pair = await runtime.auth.refresh(
        body.refresh_token,
        device_info=body.device_info.model_dump(exclude_none=True) if body.device_info else None,
        client_ip=_client_ip(request),
    )
    return Envelope(status="ok", data=_token_response(user, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: Optional[LogoutRequest] = None, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id, body.refresh_token if body else None)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data={"logged_out": True, "all_devices": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=UserResponse(**profile))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.change_password(principal.user_id, body.current_password, body.new_password)
    return Envelope(status="ok", data={"password_changed": True})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Start a password reset.

    The response is identical whether or not the identifier exists. Token
    delivery belongs to the notification service, which consumes the
    ``user.password_reset`` flow; in TEST_MODE the token is echoed back.
    """
    runtime = get_runtime()
    token = await runtime.auth.request_password_reset(body.identifier)
    data: Dict[str, Any] = {"requested": True}
    if runtime.settings.test_mode and token:
        data["token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"password_reset": True})


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    token = await runtime.auth.request_email_verification(principal.user_id)
    data: Dict[str, Any] = {"requested": True}
    if runtime.settings.test_mode:
        data["token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/verify-email/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(
    body: EmailVerificationConfirm, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(principal.user_id, body.token)
    return Envelope(status="ok", data={"verified": user.is_verified})


@router.post("/auth/verify-phone/request", response_model=Envelope, tags=["auth"])
async def request_phone_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    otp = await runtime.auth.request_phone_verification(principal.user_id)
    data: Dict[str, Any] = {"requested": True}
    if runtime.settings.test_mode:
        data["otp"] = otp
    return Envelope(status="ok", data=data)


@router.post("/auth/verify-phone/confirm", response_model=Envelope, tags=["auth"])
async def confirm_phone_verification(
    body: PhoneVerificationConfirm, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.verify_phone(principal.user_id, body.otp)
    return Envelope(status="ok", data={"phone_verified": user.phone_verified_at is not None})


@router.get("/health", response_model=Envelope, tags=["health"])
async def health():
    runtime = get_runtime()
    report = await runtime.health()
    return Envelope(status="ok", data=report)
