from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service import events as ev
from authgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DependencyUnavailableError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from authgate.service.events import EventPublisher
from authgate.service.passwords import PasswordHasher, password_policy_violations
from authgate.service.tokens import TokenClaims, TokenPair, TokenService, extract_bearer, hash_token
from authgate.storage.credentials import CredentialStore
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Role, User, utcnow
from authgate.storage.users import UserStore, is_email_identifier

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")
PHONE_OTP = "phone_verification"


def _fingerprint(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def normalize_identifier(identifier: str) -> str:
    identifier = (identifier or "").strip()
    return identifier.lower() if is_email_identifier(identifier) else identifier


@dataclass
class AuthContext:
    user_id: str
    role: str
    token_id: str
    user: User
    claims: Optional[TokenClaims] = None


class AuthService:
    """Account flows on top of the token service and the two stores.

    The relational store is the source of truth for accounts and lockout;
    the credential store holds everything short-lived. Events are emitted
    after the state change they describe has been committed.
    """

    # Roles that may be chosen at self-registration
    SELF_SERVICE_ROLES = frozenset(Role.values() - {Role.PLATFORM_ADMIN.value})

    def __init__(
        self,
        users: UserStore,
        tokens: TokenService,
        credentials: CredentialStore,
        hasher: PasswordHasher,
        events: EventPublisher,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.credentials = credentials
        self.hasher = hasher
        self.events = events
        self.settings = settings
        self._clock = clock

    def _check_password_policy(self, password: str) -> None:
        problems = password_policy_violations(password or "")
        if problems:
            raise ValidationError("Password does not meet requirements", detail={"password": problems})

    async def _require_user(self, user_id: str) -> User:
        user = await self.users.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        role: str,
        *,
        phone: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        device_info: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        email = (email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError("Invalid email address", detail={"field": "email"})
        if role not in self.SELF_SERVICE_ROLES:
            raise ValidationError("Invalid role", detail={"field": "role"})
        if phone is not None:
            phone = phone.strip()
            if not _E164_RE.match(phone):
                raise ValidationError("Phone must be in E.164 format", detail={"field": "phone"})
        self._check_password_policy(password)

        try:
            user = await self.users.create_user(
                email=email,
                password_digest=self.hasher.hash(password),
                role=role,
                phone=phone,
                profile=profile,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

        pair = await self.tokens.issue(user, device_info=device_info, client_ip=client_ip)
        await self.credentials.cache_user_profile(user.id, user.to_public_dict())
        self.events.emit(ev.USER_CREATED, {"user_id": user.id, "role": user.role})
        logger.info("user_registered", user_id=user.id, role=user.role)
        return user, pair

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        """Exchange credentials for a token pair.

        Lockout is evaluated after the user lookup and before the password
        check, so a locked account is refused even with the right password.
        Unknown identifiers and wrong passwords get the same error.
        """
        identifier = normalize_identifier(identifier)
        if not identifier or not password:
            raise ValidationError("Identifier and password are required")
        fingerprint = _fingerprint(identifier)

        status = await self.credentials.check_rate_limit(
            f"login:{identifier}",
            self.settings.login_rate_limit,
            self.settings.login_rate_limit_window_seconds,
        )
        if status.blocked:
            logger.warning("login_rate_limited", identifier_hash=fingerprint, attempts=status.attempts)
            raise RateLimitedError(
                "Too many login attempts",
                detail={"reset_time": status.reset_time.isoformat()},
            )

        user = await self.users.get_user_by_identifier(identifier)
        if not user:
            logger.info("login_failed", identifier_hash=fingerprint, reason="unknown_identifier")
            raise AuthenticationError("Invalid credentials")

        now = self._clock()
        if user.lock_expired(now) and await self.users.clear_expired_lock(user.id):
            user = replace(user, failed_login_attempts=0, locked_until=None)
            logger.info("account_lock_expired", user_id=user.id)
        if user.is_locked(now):
            logger.warning("login_refused_locked", user_id=user.id)
            raise AccountLockedError(
                "Account is temporarily locked",
                detail={"locked_until": user.locked_until.isoformat()},
            )

        if not self.hasher.verify(user.password_digest, password):
            state = await self.users.increment_failed_login_attempts(
                user.id,
                max_attempts=self.settings.max_login_attempts,
                lockout=timedelta(minutes=self.settings.lockout_duration_minutes),
            )
            attempts, locked_until = state or (user.failed_login_attempts + 1, None)
            if locked_until is not None:
                logger.warning("account_locked", user_id=user.id, attempts=attempts)
            else:
                logger.info("login_failed", user_id=user.id, reason="bad_password", attempts=attempts)
            raise AuthenticationError("Invalid credentials")

        if not user.is_verified and not self.settings.allow_unverified_login:
            logger.info("login_refused_unverified", user_id=user.id)
            raise AuthorizationError("Account not verified")

        last_login = await self.users.record_successful_login(user.id)
        user = replace(user, failed_login_attempts=0, locked_until=None, last_login_at=last_login or now)
        pair = await self.tokens.issue(user, device_info=device_info, client_ip=client_ip)
        await self.credentials.cache_user_profile(user.id, user.to_public_dict())
        await self.credentials.track_active_user(user.id)
        self.events.emit(
            ev.USER_LOGIN,
            {"user_id": user.id, "role": user.role, "client_ip": client_ip},
        )
        logger.info("login_succeeded", user_id=user.id)
        return user, pair

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        user, pair = await self.tokens.refresh(refresh_token, device_info=device_info, client_ip=client_ip)
        await self.credentials.track_active_user(user.id)
        return user, pair

    async def logout(self, user_id: str, refresh_token: Optional[str] = None) -> None:
        await self.tokens.revoke(user_id, refresh_token)
        self.events.emit(ev.USER_LOGOUT, {"user_id": user_id, "all_devices": False})

    async def logout_all(self, user_id: str) -> None:
        await self.tokens.revoke_all(user_id)
        self.events.emit(ev.USER_LOGOUT, {"user_id": user_id, "all_devices": True})

    async def authenticate(self, authorization_header: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization_header)
        if not token:
            raise AuthenticationError("Missing bearer token")
        user, claims = await self.tokens.authenticate(token)
        await self.credentials.track_active_user(user.id)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            token_id=claims.jti,
            user=user,
            claims=claims,
        )

    def authorize(self, context: AuthContext, *roles: str) -> AuthContext:
        if roles and context.role not in roles:
            logger.info("authorization_denied", user_id=context.user_id, role=context.role)
            raise AuthorizationError("Insufficient permissions", detail={"required": list(roles)})
        return context

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        cached = await self.credentials.get_user_profile(user_id)
        if cached:
            return cached
        user = await self._require_user(user_id)
        profile = user.to_public_dict()
        await self.credentials.cache_user_profile(user_id, profile)
        return profile

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def request_email_verification(self, user_id: str) -> str:
        """Return a raw single-use token; only its hash is stored."""
        user = await self._require_user(user_id)
        if user.is_verified:
            raise ValidationError("Email already verified")
        token = secrets.token_urlsafe(32)
        if not await self.credentials.set_email_verification_token(user.id, hash_token(token)):
            raise DependencyUnavailableError("could not store verification token", detail={"dependency": "cache"})
        logger.info("email_verification_requested", user_id=user.id)
        return token

    async def verify_email(self, user_id: str, token: str) -> User:
        record = await self.credentials.get_email_verification_token(user_id)
        if not record or not hmac.compare_digest(str(record.get("token_hash", "")), hash_token(token or "")):
            logger.warning("email_verification_invalid_token", user_id=user_id)
            raise ValidationError("Invalid or expired verification token")
        if not await self.users.mark_email_verified(user_id):
            raise NotFoundError("User not found")
        await self.credentials.delete_email_verification_token(user_id)
        await self.credentials.invalidate_user_profile(user_id)
        self.events.emit(ev.USER_VERIFIED, {"user_id": user_id, "channel": "email"})
        logger.info("email_verified", user_id=user_id)
        return await self._require_user(user_id)

    async def request_phone_verification(self, user_id: str) -> str:
        """Generate a six digit code for the user's phone; delivery is the caller's job."""
        user = await self._require_user(user_id)
        if not user.phone:
            raise ValidationError("No phone number on file", detail={"field": "phone"})
        otp = f"{secrets.randbelow(10 ** 6):06d}"
        if not await self.credentials.set_otp(user.phone, otp, PHONE_OTP):
            raise DependencyUnavailableError("could not store OTP", detail={"dependency": "cache"})
        logger.info("phone_verification_requested", user_id=user.id)
        return otp

    async def verify_phone(self, user_id: str, otp: str) -> User:
        user = await self._require_user(user_id)
        if not user.phone:
            raise ValidationError("No phone number on file", detail={"field": "phone"})
        result = await self.credentials.verify_otp(user.phone, otp, PHONE_OTP)
        if not result.valid:
            raise ValidationError(result.reason or "Invalid OTP", detail={"attempts_left": result.attempts_left})
        await self.users.mark_phone_verified(user.id)
        await self.credentials.invalidate_user_profile(user.id)
        self.events.emit(ev.USER_VERIFIED, {"user_id": user.id, "channel": "phone"})
        logger.info("phone_verified", user_id=user.id)
        return await self._require_user(user.id)

    # ------------------------------------------------------------------
    # Password management
    # ------------------------------------------------------------------

    async def request_password_reset(self, identifier: str) -> Optional[str]:
        """Start a reset; returns ``None`` for unknown identifiers.

        The response to the caller must not reveal which case occurred.
        """
        identifier = normalize_identifier(identifier)
        user = await self.users.get_user_by_identifier(identifier) if identifier else None
        if not user:
            logger.info("password_reset_unknown_identifier", identifier_hash=_fingerprint(identifier))
            return None
        token = secrets.token_urlsafe(32)
        token_hash = hash_token(token)
        expires_at = self._clock() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        await self.users.create_password_reset_token(user.id, token_hash, expires_at)
        # Newest request wins; older tokens are refused while this marker lives
        await self.credentials.set_password_reset_token(user.id, token_hash)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> None:
        self._check_password_policy(new_password)
        token_hash = hash_token(token or "")
        user_id = await self.users.consume_password_reset_token(token_hash)
        if not user_id:
            logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
            raise ValidationError("Invalid or expired reset token")
        marker = await self.credentials.get_password_reset_token(user_id)
        if marker and not hmac.compare_digest(str(marker.get("token_hash", "")), token_hash):
            logger.warning("password_reset_superseded_token", user_id=user_id)
            raise ValidationError("Invalid or expired reset token")

        if not await self.users.update_password(user_id, self.hasher.hash(new_password)):
            raise NotFoundError("User not found")
        await self.tokens.revoke_all(user_id)
        await self.credentials.delete_password_reset_token(user_id)
        self.events.emit(ev.USER_PASSWORD_RESET, {"user_id": user_id})
        logger.info("password_reset_completed", user_id=user_id)

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = await self._require_user(user_id)
        if not self.hasher.verify(user.password_digest, current_password or ""):
            logger.info("password_change_refused", user_id=user_id)
            raise AuthenticationError("Invalid credentials")
        self._check_password_policy(new_password)
        await self.users.update_password(user_id, self.hasher.hash(new_password))
        await self.tokens.revoke_all(user_id)
        logger.info("password_changed", user_id=user_id)

    async def deactivate_user(self, user_id: str) -> None:
        if not await self.users.deactivate_user(user_id):
            raise NotFoundError("User not found")
        await self.credentials.invalidate_user_cache(user_id)
        self.events.emit(ev.USER_DEACTIVATED, {"user_id": user_id})
        logger.info("user_deactivated", user_id=user_id)


__all__ = ["AuthContext", "AuthService", "normalize_identifier"]
