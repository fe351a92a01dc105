from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Role(str, Enum):
    """Marketplace tenant roles."""

    HOSPITAL = "hospital"
    ARTISAN = "artisan"
    HOUSEHOLD = "household"
    SUPPLIER = "supplier"
    DELIVERY_DRIVER = "delivery_driver"
    PLATFORM_ADMIN = "platform_admin"

    @classmethod
    def values(cls) -> set[str]:
        return {role.value for role in cls}


@dataclass
class User:
    id: str
    email: str
    password_digest: str
    role: str
    phone: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    email_verified_at: Optional[datetime] = None
    phone_verified_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """Locked while ``locked_until`` lies in the future."""
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    def lock_expired(self, now: Optional[datetime] = None) -> bool:
        return self.locked_until is not None and not self.is_locked(now)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        return cls(
            id=str(row["id"]),
            email=row["email"],
            password_digest=row["password_hash"],
            role=row["role"],
            phone=row.get("phone"),
            is_active=bool(row.get("is_active", True)),
            is_verified=bool(row.get("is_verified", False)),
            email_verified_at=_parse_dt(row.get("email_verified_at")),
            phone_verified_at=_parse_dt(row.get("phone_verified_at")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=_parse_dt(row.get("locked_until")),
            last_login_at=_parse_dt(row.get("last_login_at")),
            profile=row.get("profile") or {},
            created_at=_parse_dt(row.get("created_at")) or utcnow(),
            updated_at=_parse_dt(row.get("updated_at")) or utcnow(),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Projection safe to cache and return to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "email_verified_at": _iso(self.email_verified_at),
            "phone_verified_at": _iso(self.phone_verified_at),
            "last_login_at": _iso(self.last_login_at),
            "profile": dict(self.profile),
            "created_at": _iso(self.created_at),
        }


@dataclass
class SessionRecord:
    """The single live session of a user; ``token_id`` is the access-token jti."""

    user_id: str
    token_id: str
    login_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)
    device_info: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "token_id": self.token_id,
            "device_info": self.device_info,
            "login_at": _iso(self.login_at),
            "last_accessed": _iso(self.last_accessed),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            user_id=data["user_id"],
            token_id=data["token_id"],
            device_info=data.get("device_info"),
            login_at=_parse_dt(data.get("login_at")) or utcnow(),
            last_accessed=_parse_dt(data.get("last_accessed")) or utcnow(),
        )


@dataclass
class RefreshTokenRecord:
    user_id: str
    token_hash: str
    expires_at: datetime
    device_info: Optional[Dict[str, Any]] = None
    client_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "token_hash": self.token_hash,
            "expires_at": _iso(self.expires_at),
            "device_info": self.device_info,
            "client_ip": self.client_ip,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshTokenRecord":
        return cls(
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=_parse_dt(data["expires_at"]),
            device_info=data.get("device_info"),
            client_ip=data.get("client_ip"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class OTPRecord:
    otp: str
    identifier: str
    type: str
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "otp": self.otp,
            "identifier": self.identifier,
            "type": self.type,
            "attempts": self.attempts,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OTPRecord":
        return cls(
            otp=str(data["otp"]),
            identifier=data["identifier"],
            type=data["type"],
            attempts=int(data.get("attempts") or 0),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class OTPVerification:
    valid: bool
    reason: Optional[str] = None
    attempts_left: Optional[int] = None


@dataclass
class RateLimitStatus:
    attempts: int
    remaining: int
    reset_time: datetime
    blocked: bool


__all__ = [
    "OTPRecord",
    "OTPVerification",
    "RateLimitStatus",
    "RefreshTokenRecord",
    "Role",
    "SessionRecord",
    "User",
    "utcnow",
]
