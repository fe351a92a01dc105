from __future__ import annotations

import hmac
import math
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import DependencyUnavailableError, NotFoundError
from authgate.storage.cache import CacheAdapter
from authgate.storage.models import (
    OTPRecord,
    OTPVerification,
    RateLimitStatus,
    RefreshTokenRecord,
    SessionRecord,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")


class CredentialStore:
    """Sessions, refresh tokens, OTPs and counters on top of the cache.

    Keys look like ``{prefix}:{entity}:{id}[:{sub}]`` so that every family
    belonging to one user can be removed with a pattern delete.

    Operations are best-effort: a cache failure is logged and answered with a
    safe default (miss, ``False`` or ``0``). The exceptions are
    :meth:`revoke_all_refresh_tokens` and :meth:`invalidate_user_cache`, which
    raise ``DependencyUnavailableError`` because callers need to know the
    revocation really happened. Refresh-token lookups degrade to ``None``,
    which callers treat as an invalid token.
    """

    SESSIONS = "sessions"
    PROFILES = "profiles"
    PERMISSIONS = "permissions"
    REFRESH_TOKENS = "refresh_tokens"
    OTP = "otp"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    RATE_LIMIT = "rate_limit"
    ACTIVE_USERS = "active_users"

    def __init__(
        self,
        cache: CacheAdapter,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.prefix = settings.cache_key_prefix
        self._clock = clock

    def generate_key(self, namespace: str, identifier: str, sub_key: Optional[str] = None) -> str:
        parts = [self.prefix, namespace, identifier]
        if sub_key:
            parts.append(sub_key)
        return ":".join(parts)

    async def _soft(self, label: str, operation: Callable[[], Awaitable[T]], default: T, **context: Any) -> T:
        try:
            return await operation()
        except Exception as exc:
            logger.warning(
                "credential_store_degraded",
                operation=label,
                error_type=type(exc).__name__,
                error=str(exc),
                **context,
            )
            return default

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def set_session(self, session: SessionRecord) -> bool:
        key = self.generate_key(self.SESSIONS, session.user_id)
        return await self._soft(
            "set_session",
            lambda: self.cache.set(key, session.to_dict(), self.settings.session_ttl_seconds),
            False,
            user_id=session.user_id,
        )

    async def get_session(self, user_id: str) -> Optional[SessionRecord]:
        """Read the session and slide its expiry window forward."""
        key = self.generate_key(self.SESSIONS, user_id)
        raw = await self._soft("get_session", lambda: self.cache.get(key), None, user_id=user_id)
        if not raw:
            return None
        session = SessionRecord.from_dict(raw)
        session.last_accessed = self._clock()
        await self._soft(
            "touch_session",
            lambda: self.cache.set(key, session.to_dict(), self.settings.session_ttl_seconds),
            False,
            user_id=user_id,
        )
        return session

    async def delete_session(self, user_id: str) -> bool:
        key = self.generate_key(self.SESSIONS, user_id)
        deleted = await self._soft("delete_session", lambda: self.cache.delete(key), 0, user_id=user_id)
        return deleted > 0

    async def extend_session(self, user_id: str, additional_seconds: int = 3600) -> bool:
        """Add to the remaining TTL; an already expired session stays gone."""
        key = self.generate_key(self.SESSIONS, user_id)
        remaining = await self._soft("session_ttl", lambda: self.cache.ttl(key), -2, user_id=user_id)
        if remaining <= 0:
            return False
        return await self._soft(
            "extend_session",
            lambda: self.cache.expire(key, remaining + additional_seconds),
            False,
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Profile and permission projections
    # ------------------------------------------------------------------

    async def cache_user_profile(self, user_id: str, profile: Dict[str, Any]) -> bool:
        key = self.generate_key(self.PROFILES, user_id)
        return await self._soft(
            "cache_user_profile",
            lambda: self.cache.set(key, profile, self.settings.profile_ttl_seconds),
            False,
            user_id=user_id,
        )

    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        key = self.generate_key(self.PROFILES, user_id)
        return await self._soft("get_user_profile", lambda: self.cache.get(key), None, user_id=user_id)

    async def invalidate_user_profile(self, user_id: str) -> bool:
        key = self.generate_key(self.PROFILES, user_id)
        return await self._soft("invalidate_user_profile", lambda: self.cache.delete(key), 0) > 0

    async def cache_user_permissions(self, user_id: str, permissions: List[str]) -> bool:
        key = self.generate_key(self.PERMISSIONS, user_id)
        return await self._soft(
            "cache_user_permissions",
            lambda: self.cache.set(key, list(permissions), self.settings.permissions_ttl_seconds),
            False,
            user_id=user_id,
        )

    async def get_user_permissions(self, user_id: str) -> Optional[List[str]]:
        key = self.generate_key(self.PERMISSIONS, user_id)
        return await self._soft("get_user_permissions", lambda: self.cache.get(key), None, user_id=user_id)

    async def invalidate_user_permissions(self, user_id: str) -> bool:
        key = self.generate_key(self.PERMISSIONS, user_id)
        return await self._soft("invalidate_user_permissions", lambda: self.cache.delete(key), 0) > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    async def store_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> bool:
        record = RefreshTokenRecord(
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            device_info=device_info,
            client_ip=client_ip,
            created_at=self._clock(),
        )
        ttl = max(1, math.ceil((expires_at - self._clock()).total_seconds()))
        key = self.generate_key(self.REFRESH_TOKENS, user_id, token_hash)
        return await self._soft(
            "store_refresh_token",
            lambda: self.cache.set(key, record.to_dict(), ttl),
            False,
            user_id=user_id,
        )

    def _live_record(self, raw: Any, user_id: str) -> Optional[RefreshTokenRecord]:
        if not raw:
            return None
        try:
            record = RefreshTokenRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("refresh_token_record_malformed", user_id=user_id)
            return None
        if record.user_id != user_id or record.is_expired(self._clock()):
            return None
        return record

    async def validate_refresh_token(self, user_id: str, token_hash: str) -> Optional[RefreshTokenRecord]:
        key = self.generate_key(self.REFRESH_TOKENS, user_id, token_hash)
        raw = await self._soft("validate_refresh_token", lambda: self.cache.get(key), None, user_id=user_id)
        return self._live_record(raw, user_id)

    async def consume_refresh_token(self, user_id: str, token_hash: str) -> Optional[RefreshTokenRecord]:
        """Atomically fetch and remove a refresh-token record.

        Of two concurrent callers presenting the same token, at most one gets
        the record back.
        """
        key = self.generate_key(self.REFRESH_TOKENS, user_id, token_hash)
        raw = await self._soft("consume_refresh_token", lambda: self.cache.getdel(key), None, user_id=user_id)
        return self._live_record(raw, user_id)

    async def revoke_refresh_token(self, user_id: str, token_hash: str) -> bool:
        key = self.generate_key(self.REFRESH_TOKENS, user_id, token_hash)
        deleted = await self._soft("revoke_refresh_token", lambda: self.cache.delete(key), 0, user_id=user_id)
        return deleted > 0

    async def revoke_all_refresh_tokens(self, user_id: str) -> int:
        pattern = self.generate_key(self.REFRESH_TOKENS, user_id, "*")
        try:
            deleted = await self.cache.delete_pattern(pattern)
        except DependencyUnavailableError:
            logger.error("revoke_all_refresh_tokens_failed", user_id=user_id)
            raise
        except Exception as exc:
            logger.error("revoke_all_refresh_tokens_failed", user_id=user_id, error=str(exc))
            raise DependencyUnavailableError(
                "could not revoke refresh tokens", detail={"dependency": "cache"}
            ) from exc
        logger.info("refresh_tokens_revoked", user_id=user_id, count=deleted)
        return deleted

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    async def set_otp(self, identifier: str, otp: str, otp_type: str = "general") -> bool:
        key = self.generate_key(self.OTP, otp_type, identifier)
        record = OTPRecord(otp=otp, identifier=identifier, type=otp_type, created_at=self._clock())
        return await self._soft(
            "set_otp",
            lambda: self.cache.set(key, record.to_dict(), self.settings.otp_ttl_seconds),
            False,
            otp_type=otp_type,
        )

    async def verify_otp(self, identifier: str, otp: str, otp_type: str = "general") -> OTPVerification:
        """Check a code, counting every call against the attempt budget.

        A wrong code returns ``valid=False``. A missing record and a record
        whose budget is spent raise ``NotFoundError``; the record is deleted
        once the budget is exceeded, so the code can never succeed afterwards.
        The attempt is counted in the cache in one atomic step, so concurrent
        guesses cannot share a budget slot.
        """
        key = self.generate_key(self.OTP, otp_type, identifier)
        max_attempts = self.settings.otp_max_attempts
        raw, exhausted = await self._soft(
            "record_otp_attempt",
            lambda: self.cache.record_attempt(key, max_attempts),
            (None, False),
            otp_type=otp_type,
        )
        if exhausted:
            logger.warning("otp_attempts_exhausted", otp_type=otp_type)
            raise NotFoundError("OTP not found or expired", detail={"reason": "too_many_attempts"})
        if not raw:
            raise NotFoundError("OTP not found or expired", detail={"reason": "not_found"})
        record = OTPRecord.from_dict(raw)

        if not hmac.compare_digest(record.otp.encode("utf-8"), str(otp).encode("utf-8", "replace")):
            return OTPVerification(
                valid=False,
                reason="Invalid OTP",
                attempts_left=max_attempts - record.attempts,
            )

        # Only one of several concurrent correct guesses may use the code
        consumed = await self._soft("consume_otp", lambda: self.cache.getdel(key), None)
        if not consumed:
            raise NotFoundError("OTP not found or expired", detail={"reason": "not_found"})
        return OTPVerification(valid=True)

    # ------------------------------------------------------------------
    # Email verification and password reset
    # ------------------------------------------------------------------

    async def set_email_verification_token(self, user_id: str, token_hash: str) -> bool:
        key = self.generate_key(self.EMAIL_VERIFICATION, user_id)
        data = {"token_hash": token_hash, "user_id": user_id, "created_at": self._clock().isoformat()}
        ttl = self.settings.email_verification_ttl_hours * 3600
        return await self._soft("set_email_verification_token", lambda: self.cache.set(key, data, ttl), False)

    async def get_email_verification_token(self, user_id: str) -> Optional[Dict[str, Any]]:
        key = self.generate_key(self.EMAIL_VERIFICATION, user_id)
        return await self._soft("get_email_verification_token", lambda: self.cache.get(key), None)

    async def delete_email_verification_token(self, user_id: str) -> bool:
        key = self.generate_key(self.EMAIL_VERIFICATION, user_id)
        return await self._soft("delete_email_verification_token", lambda: self.cache.delete(key), 0) > 0

    async def set_password_reset_token(self, user_id: str, token_hash: str) -> bool:
        key = self.generate_key(self.PASSWORD_RESET, user_id)
        data = {"token_hash": token_hash, "user_id": user_id, "created_at": self._clock().isoformat()}
        ttl = self.settings.password_reset_ttl_minutes * 60
        return await self._soft("set_password_reset_token", lambda: self.cache.set(key, data, ttl), False)

    async def get_password_reset_token(self, user_id: str) -> Optional[Dict[str, Any]]:
        key = self.generate_key(self.PASSWORD_RESET, user_id)
        return await self._soft("get_password_reset_token", lambda: self.cache.get(key), None)

    async def delete_password_reset_token(self, user_id: str) -> bool:
        key = self.generate_key(self.PASSWORD_RESET, user_id)
        return await self._soft("delete_password_reset_token", lambda: self.cache.delete(key), 0) > 0

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def check_rate_limit(self, identifier: str, max_requests: int, window_seconds: int) -> RateLimitStatus:
        """Fixed-window counter; the window starts with the first hit.

        The increment and the TTL are applied in one atomic step, and the
        TTL is only set on a counter that has none, so later hits never push
        the window out. A cache outage lets the request through.
        """
        key = self.generate_key(self.RATE_LIMIT, identifier)
        now = self._clock()

        async def _hit() -> RateLimitStatus:
            current, ttl = await self.cache.incr_with_ttl(key, window_seconds)
            return RateLimitStatus(
                attempts=current,
                remaining=max(0, max_requests - current),
                reset_time=now + timedelta(seconds=max(ttl, 0)),
                blocked=current > max_requests,
            )

        fallback = RateLimitStatus(
            attempts=0,
            remaining=max_requests,
            reset_time=now + timedelta(seconds=window_seconds),
            blocked=False,
        )
        return await self._soft("check_rate_limit", _hit, fallback)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def track_active_user(self, user_id: str) -> bool:
        key = self.generate_key(self.ACTIVE_USERS, "current")
        now_ms = self._clock().timestamp() * 1000
        cutoff = now_ms - self.settings.active_user_window_seconds * 1000

        async def _track() -> bool:
            await self.cache.zadd(key, user_id, now_ms)
            await self.cache.zremrangebyscore(key, float("-inf"), cutoff)
            return True

        return await self._soft("track_active_user", _track, False)

    async def get_active_users_count(self) -> int:
        key = self.generate_key(self.ACTIVE_USERS, "current")
        return await self._soft("get_active_users_count", lambda: self.cache.zcard(key), 0)

    # ------------------------------------------------------------------
    # Bulk invalidation and health
    # ------------------------------------------------------------------

    async def invalidate_user_cache(self, user_id: str) -> int:
        """Remove every cached key family for a user and return the count."""
        keys = [
            self.generate_key(self.SESSIONS, user_id),
            self.generate_key(self.PROFILES, user_id),
            self.generate_key(self.PERMISSIONS, user_id),
            self.generate_key(self.EMAIL_VERIFICATION, user_id),
            self.generate_key(self.PASSWORD_RESET, user_id),
        ]
        try:
            deleted = await self.cache.delete(*keys)
        except DependencyUnavailableError:
            logger.error("invalidate_user_cache_failed", user_id=user_id)
            raise
        except Exception as exc:
            logger.error("invalidate_user_cache_failed", user_id=user_id, error=str(exc))
            raise DependencyUnavailableError(
                "could not invalidate user cache", detail={"dependency": "cache"}
            ) from exc
        deleted += await self.revoke_all_refresh_tokens(user_id)
        logger.info("user_cache_invalidated", user_id=user_id, count=deleted)
        return deleted

    async def health_check(self) -> Dict[str, Any]:
        key = self.generate_key("health", "check")
        stamp = self._clock().isoformat()
        try:
            await self.cache.set(key, {"stamp": stamp}, 10)
            echoed = await self.cache.get(key)
            await self.cache.delete(key)
        except Exception as exc:
            return {"status": "unhealthy", "error": type(exc).__name__}
        if not echoed or echoed.get("stamp") != stamp:
            return {"status": "unhealthy", "error": "read_mismatch"}
        return {"status": "healthy"}


__all__ = ["CredentialStore"]
