from __future__ import annotations

import re
from typing import List, Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.logging import get_logger

logger = get_logger(__name__)

_SPECIAL_CHARS = re.compile(r"[@$!%*?&#^()_+\-=\[\]{};':\"\\|,.<>/~`]")


class PasswordHasher(Protocol):
    """Opaque one-way hashing of secrets."""

    def hash(self, secret: str) -> str: ...

    def verify(self, digest: str, secret: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id with 64 MiB memory, 3 passes and 4 lanes by default."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, digest: str, secret: str) -> bool:
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unverifiable")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True


def password_policy_violations(password: str, *, min_length: int = 8) -> List[str]:
    """Return the policy rules ``password`` breaks; empty when it is acceptable."""
    problems: List[str] = []
    if len(password) < min_length:
        problems.append(f"must be at least {min_length} characters long")
    if not re.search(r"[A-Z]", password):
        problems.append("must contain an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("must contain a lowercase letter")
    if not re.search(r"\d", password):
        problems.append("must contain a number")
    if not _SPECIAL_CHARS.search(password):
        problems.append("must contain a special character")
    return problems


__all__ = ["Argon2PasswordHasher", "PasswordHasher", "password_policy_violations"]
