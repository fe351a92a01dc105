from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authgate.logging import get_correlation_id

# Every code a ServiceError or the fallback handlers may emit
_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "account_locked",
        "rate_limited",
        "dependency_unavailable",
        "server_error",
    }
)
MAX_TOKEN_LENGTH = 4096


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class DeviceInfo(BaseModel):
    device_type: Optional[str] = Field(default=None, max_length=32)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    device_id: Optional[str] = Field(default=None, max_length=128)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)
    role: str = Field(..., max_length=32)
    phone: Optional[str] = Field(default=None, max_length=16)
    profile: Optional[Dict[str, Any]] = None
    device_info: Optional[DeviceInfo] = None


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320, description="Email or E.164 phone")
    password: str = Field(..., min_length=1, max_length=256)
    device_info: Optional[DeviceInfo] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    device_info: Optional[DeviceInfo] = None


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class PasswordResetRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PhoneVerificationConfirm(BaseModel):
    otp: str = Field(..., pattern=r"^\d{6}$")


class TokenResponse(BaseModel):
    user_id: str
    role: str
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_at: datetime


class UserResponse(BaseModel):
    id: str
    email: str
    phone: Optional[str] = None
    role: str
    is_active: bool = True
    is_verified: bool = False
    email_verified_at: Optional[datetime] = None
    phone_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
