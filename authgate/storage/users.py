from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import User, utcnow
from authgate.storage.resilient import ResilientDataAccess

logger = get_logger(__name__)

# (failed_login_attempts, locked_until) after an increment
LockoutState = Tuple[int, Optional[datetime]]


def is_email_identifier(identifier: str) -> bool:
    return "@" in identifier


class UserStore(Protocol):
    """Relational source of truth for users and their lockout counters."""

    async def create_user(
        self,
        *,
        email: str,
        password_digest: str,
        role: str,
        phone: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    async def increment_failed_login_attempts(
        self, user_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Optional[LockoutState]: ...

    async def clear_expired_lock(self, user_id: str) -> bool: ...

    async def record_successful_login(self, user_id: str) -> Optional[datetime]: ...

    async def update_password(self, user_id: str, password_digest: str) -> bool: ...

    async def mark_email_verified(self, user_id: str) -> bool: ...

    async def mark_phone_verified(self, user_id: str) -> bool: ...

    async def deactivate_user(self, user_id: str) -> bool: ...

    async def create_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    async def consume_password_reset_token(self, token_hash: str) -> Optional[str]: ...


_USER_COLUMNS = """
    id, email, phone, password_hash, role, is_active, is_verified,
    email_verified_at, phone_verified_at, failed_login_attempts,
    locked_until, last_login_at, profile, created_at, updated_at
"""


class PostgresUserStore:
    """User persistence in ``auth.users`` through the database breaker.

    ``auth.users.email`` and ``auth.users.phone`` carry unique indexes; lookups
    pick the column from the identifier's shape instead of OR-ing both.
    """

    def __init__(self, data: ResilientDataAccess) -> None:
        self.data = data

    async def create_user(
        self,
        *,
        email: str,
        password_digest: str,
        role: str,
        phone: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> User:
        try:
            rows = await self.data.query(
                f"""
                INSERT INTO auth.users (id, email, phone, password_hash, role, profile)
                VALUES (%(id)s, %(email)s, %(phone)s, %(password_hash)s, %(role)s, %(profile)s)
                RETURNING {_USER_COLUMNS}
                """,
                {
                    "id": str(uuid.uuid4()),
                    "email": email,
                    "phone": phone,
                    "password_hash": password_digest,
                    "role": role,
                    "profile": Jsonb(profile or {}),
                },
            )
        except pg_errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "phone" if "phone" in constraint else "email"
            raise ConstraintViolation(f"{field} already registered", field=field) from exc
        user = User.from_row(rows[0])
        logger.info("user_created", user_id=user.id, role=user.role)
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        rows = await self.data.query(
            f"SELECT {_USER_COLUMNS} FROM auth.users WHERE id = %(id)s",
            {"id": user_id},
        )
        return User.from_row(rows[0]) if rows else None

    async def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        column = "email" if is_email_identifier(identifier) else "phone"
        rows = await self.data.query(
            f"""
            SELECT {_USER_COLUMNS} FROM auth.users
            WHERE {column} = %(identifier)s AND is_active = true
            """,
            {"identifier": identifier},
        )
        return User.from_row(rows[0]) if rows else None

    async def increment_failed_login_attempts(
        self, user_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Optional[LockoutState]:
        # Single statement so concurrent failures cannot lose an increment
        rows = await self.data.query(
            """
            UPDATE auth.users
            SET failed_login_attempts = failed_login_attempts + 1,
                locked_until = CASE
                    WHEN failed_login_attempts + 1 >= %(max_attempts)s
                        THEN CURRENT_TIMESTAMP + make_interval(secs => %(lockout_seconds)s)
                    ELSE locked_until
                END,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s
            RETURNING failed_login_attempts, locked_until
            """,
            {
                "id": user_id,
                "max_attempts": max_attempts,
                "lockout_seconds": lockout.total_seconds(),
            },
        )
        if not rows:
            return None
        return int(rows[0]["failed_login_attempts"]), rows[0]["locked_until"]

    async def clear_expired_lock(self, user_id: str) -> bool:
        rows = await self.data.query(
            """
            UPDATE auth.users
            SET failed_login_attempts = 0, locked_until = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s AND locked_until IS NOT NULL AND locked_until <= CURRENT_TIMESTAMP
            RETURNING id
            """,
            {"id": user_id},
        )
        return bool(rows)

    async def record_successful_login(self, user_id: str) -> Optional[datetime]:
        rows = await self.data.query(
            """
            UPDATE auth.users
            SET last_login_at = CURRENT_TIMESTAMP, failed_login_attempts = 0,
                locked_until = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s
            RETURNING last_login_at
            """,
            {"id": user_id},
        )
        return rows[0]["last_login_at"] if rows else None

    async def update_password(self, user_id: str, password_digest: str) -> bool:
        rows = await self.data.query(
            """
            UPDATE auth.users
            SET password_hash = %(password_hash)s, failed_login_attempts = 0,
                locked_until = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s
            RETURNING id
            """,
            {"id": user_id, "password_hash": password_digest},
        )
        return bool(rows)

    async def mark_email_verified(self, user_id: str) -> bool:
        rows = await self.data.query(
            """
            UPDATE auth.users
            SET email_verified_at = CURRENT_TIMESTAMP, is_verified = true,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s
            RETURNING id
            """,
            {"id": user_id},
        )
        return bool(rows)

    async def mark_phone_verified(self, user_id: str) -> bool:
        rows = await self.data.query(
            """
            UPDATE auth.users
            SET phone_verified_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s
            RETURNING id
            """,
            {"id": user_id},
        )
        return bool(rows)

    async def deactivate_user(self, user_id: str) -> bool:
        rows = await self.data.query(
            """
            UPDATE auth.users
            SET is_active = false, updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s
            RETURNING id
            """,
            {"id": user_id},
        )
        return bool(rows)

    async def create_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        await self.data.query(
            """
            INSERT INTO auth.password_reset_tokens (user_id, token_hash, expires_at)
            VALUES (%(user_id)s, %(token_hash)s, %(expires_at)s)
            """,
            {"user_id": user_id, "token_hash": token_hash, "expires_at": expires_at},
        )

    async def consume_password_reset_token(self, token_hash: str) -> Optional[str]:
        # Check-and-mark in one statement keeps the token single-use under races
        rows = await self.data.query(
            """
            UPDATE auth.password_reset_tokens
            SET is_used = true
            WHERE token_hash = %(token_hash)s
              AND is_used = false
              AND expires_at > CURRENT_TIMESTAMP
            RETURNING user_id
            """,
            {"token_hash": token_hash},
        )
        return str(rows[0]["user_id"]) if rows else None


class MemoryUserStore:
    """In-process user store for tests and local development.

    Enforces the same email/phone uniqueness as the relational schema and
    hands out copies so callers never mutate stored state.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}
        self._by_phone: Dict[str, str] = {}
        self._reset_tokens: Dict[str, Dict[str, Any]] = {}

    def _update(self, user_id: str, **changes: Any) -> Optional[User]:
        user = self._users.get(user_id)
        if not user:
            return None
        updated = replace(user, updated_at=self._clock(), **changes)
        self._users[user_id] = updated
        return updated

    async def create_user(
        self,
        *,
        email: str,
        password_digest: str,
        role: str,
        phone: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> User:
        with self._lock:
            if email in self._by_email:
                raise ConstraintViolation("email already registered", field="email")
            if phone and phone in self._by_phone:
                raise ConstraintViolation("phone already registered", field="phone")
            now = self._clock()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                phone=phone,
                password_digest=password_digest,
                role=role,
                profile=dict(profile or {}),
                created_at=now,
                updated_at=now,
            )
            self._users[user.id] = user
            self._by_email[email] = user.id
            if phone:
                self._by_phone[phone] = user.id
        logger.info("user_created", user_id=user.id, role=user.role)
        return replace(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return replace(user) if user else None

    async def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        index = self._by_email if is_email_identifier(identifier) else self._by_phone
        with self._lock:
            user_id = index.get(identifier)
            user = self._users.get(user_id) if user_id else None
            if not user or not user.is_active:
                return None
            return replace(user)

    async def increment_failed_login_attempts(
        self, user_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Optional[LockoutState]:
        with self._lock:
            user = self._users.get(user_id)
            if not user:
                return None
            attempts = user.failed_login_attempts + 1
            locked_until = user.locked_until
            if attempts >= max_attempts:
                locked_until = self._clock() + lockout
            self._update(user_id, failed_login_attempts=attempts, locked_until=locked_until)
            return attempts, locked_until

    async def clear_expired_lock(self, user_id: str) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if not user or not user.lock_expired(self._clock()):
                return False
            self._update(user_id, failed_login_attempts=0, locked_until=None)
            return True

    async def record_successful_login(self, user_id: str) -> Optional[datetime]:
        with self._lock:
            now = self._clock()
            updated = self._update(
                user_id, last_login_at=now, failed_login_attempts=0, locked_until=None
            )
            return now if updated else None

    async def update_password(self, user_id: str, password_digest: str) -> bool:
        with self._lock:
            return (
                self._update(
                    user_id,
                    password_digest=password_digest,
                    failed_login_attempts=0,
                    locked_until=None,
                )
                is not None
            )

    async def mark_email_verified(self, user_id: str) -> bool:
        with self._lock:
            return (
                self._update(user_id, email_verified_at=self._clock(), is_verified=True)
                is not None
            )

    async def mark_phone_verified(self, user_id: str) -> bool:
        with self._lock:
            return self._update(user_id, phone_verified_at=self._clock()) is not None

    async def deactivate_user(self, user_id: str) -> bool:
        with self._lock:
            return self._update(user_id, is_active=False) is not None

    async def create_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._lock:
            self._reset_tokens[token_hash] = {
                "user_id": user_id,
                "expires_at": expires_at,
                "is_used": False,
            }

    async def consume_password_reset_token(self, token_hash: str) -> Optional[str]:
        with self._lock:
            record = self._reset_tokens.get(token_hash)
            if not record or record["is_used"] or record["expires_at"] <= self._clock():
                return None
            record["is_used"] = True
            return record["user_id"]


__all__ = [
    "LockoutState",
    "MemoryUserStore",
    "PostgresUserStore",
    "UserStore",
    "is_email_identifier",
]
