from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import (
    AlgorithmMismatchError,
    AuthenticationError,
    DependencyUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
)
from authgate.storage.credentials import CredentialStore
from authgate.storage.models import SessionRecord, User, utcnow
from authgate.storage.users import UserStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Verified token payload.

    Registered claims are typed fields; anything else the token carries is
    kept in ``extensions`` so verification stays exhaustive.
    """

    sub: str
    jti: str
    role: str
    iat: int
    exp: int
    iss: str
    aud: Union[str, Tuple[str, ...]]
    token_type: str
    nbf: Optional[int] = None
    extensions: Mapping[str, Any] = field(default_factory=dict)

    REGISTERED = ("sub", "jti", "role", "iat", "exp", "iss", "aud", "token_type", "nbf")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TokenClaims":
        if not isinstance(payload, Mapping):
            raise TokenInvalidError("token payload is not an object")
        missing = [name for name in cls.REGISTERED[:-1] if payload.get(name) in (None, "")]
        if missing:
            raise TokenInvalidError("token is missing required claims", detail={"missing": missing})
        aud = payload["aud"]
        if isinstance(aud, list):
            aud = tuple(str(item) for item in aud)
        elif not isinstance(aud, str):
            raise TokenInvalidError("aud claim must be a string or list")
        try:
            iat = int(payload["iat"])
            exp = int(payload["exp"])
            nbf = int(payload["nbf"]) if payload.get("nbf") is not None else None
        except (TypeError, ValueError) as exc:
            raise TokenInvalidError("time claims must be numeric") from exc
        return cls(
            sub=str(payload["sub"]),
            jti=str(payload["jti"]),
            role=str(payload["role"]),
            iat=iat,
            exp=exp,
            iss=str(payload["iss"]),
            aud=aud,
            token_type=str(payload["token_type"]),
            nbf=nbf,
            extensions={k: v for k, v in payload.items() if k not in cls.REGISTERED},
        )

    def audience_matches(self, audience: str) -> bool:
        if isinstance(self.aud, tuple):
            return audience in self.aud
        return self.aud == audience

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extensions)
        payload.update(
            {
                "sub": self.sub,
                "jti": self.jti,
                "role": self.role,
                "iat": self.iat,
                "exp": self.exp,
                "iss": self.iss,
                "aud": list(self.aud) if isinstance(self.aud, tuple) else self.aud,
                "token_type": self.token_type,
            }
        )
        if self.nbf is not None:
            payload["nbf"] = self.nbf
        return payload


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenService:
    """Issues, verifies, rotates and revokes signed bearer token pairs.

    Tokens are compact HS256 JWTs. Refresh tokens are signed with their own
    secret and are only honoured while a hashed record of them exists in the
    credential store; redeeming one consumes the record (rotation on use).
    Access tokens are bound to the user's single session by ``jti``.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        users: UserStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.credentials = credentials
        self.users = users
        self.settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: Dict[str, Any], secret: str) -> str:
        header = {"alg": self.settings.jwt_algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input, secret)}"

    def _split(self, token: str) -> Tuple[str, str, str]:
        if not isinstance(token, str):
            raise TokenInvalidError("token must be a string")
        if not token.isascii():
            raise TokenInvalidError("token must be ASCII")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenInvalidError("token must have three segments")
        return parts[0], parts[1], parts[2]

    def _verify(self, token: str, *, secret: str, expected_type: str) -> TokenClaims:
        header_b64, payload_b64, sig_b64 = self._split(token)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise TokenInvalidError("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise TokenInvalidError("token header is not an object")
        # Reject before touching the signature to rule out algorithm confusion
        if header.get("alg") != self.settings.jwt_algorithm:
            raise AlgorithmMismatchError(
                "unexpected token algorithm", detail={"alg": str(header.get("alg"))}
            )

        expected_sig = self._signature(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("utf-8")):
            raise TokenInvalidError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise TokenInvalidError("token payload is not valid JSON") from exc
        claims = TokenClaims.from_payload(payload)

        if claims.iss != self.settings.jwt_issuer:
            raise TokenInvalidError("unexpected issuer")
        if not claims.audience_matches(self.settings.jwt_audience):
            raise TokenInvalidError("unexpected audience")
        if claims.token_type != expected_type:
            raise TokenInvalidError("unexpected token type")

        now = self._clock().timestamp()
        leeway = self.settings.clock_tolerance_seconds
        if claims.exp <= now - leeway:
            raise TokenExpiredError("token expired")
        if claims.nbf is not None and claims.nbf > now + leeway:
            raise TokenInvalidError("token not yet valid")
        if claims.iat > now + leeway:
            raise TokenInvalidError("token issued in the future")
        return claims

    def verify_access(self, token: str) -> TokenClaims:
        return self._verify(token, secret=self.settings.jwt_secret, expected_type=ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, secret=self.settings.refresh_secret, expected_type=REFRESH)

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the payload without verifying anything; diagnostics only."""
        try:
            _, payload_b64, _ = self._split(token)
            payload = json.loads(self._decode_segment(payload_b64))
        except (TokenInvalidError, ValueError, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def issue(
        self,
        user: User,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> TokenPair:
        """Mint a fresh pair and make it the user's only session."""
        now = self._clock()
        iat = int(now.timestamp())
        access_ttl = self.settings.access_token_ttl_minutes * 60
        refresh_expires_at = now + timedelta(days=self.settings.refresh_token_ttl_days)
        access_jti = str(uuid.uuid4())
        refresh_jti = str(uuid.uuid4())
        common = {
            "sub": user.id,
            "role": user.role,
            "iat": iat,
            "nbf": iat,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        access_token = self._encode_jwt(
            {**common, "jti": access_jti, "exp": iat + access_ttl, "token_type": ACCESS},
            self.settings.jwt_secret,
        )
        refresh_token = self._encode_jwt(
            {
                **common,
                "jti": refresh_jti,
                "exp": int(refresh_expires_at.timestamp()),
                "token_type": REFRESH,
            },
            self.settings.refresh_secret,
        )

        stored = await self.credentials.store_refresh_token(
            user.id,
            hash_token(refresh_token),
            refresh_expires_at,
            device_info=device_info,
            client_ip=client_ip,
        )
        session = SessionRecord(
            user_id=user.id,
            token_id=access_jti,
            device_info=device_info,
            login_at=now,
            last_accessed=now,
        )
        if not stored or not await self.credentials.set_session(session):
            # A pair without server-side state could never be refreshed or authenticated
            logger.error("token_issue_unpersisted", user_id=user.id)
            raise DependencyUnavailableError(
                "could not persist session", detail={"dependency": "cache"}
            )
        logger.info("tokens_issued", user_id=user.id, access_jti=access_jti)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_ttl,
            refresh_expires_at=refresh_expires_at,
        )

    async def refresh(
        self,
        refresh_token: str,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        """Redeem a refresh token for a new pair; the old token dies here."""
        claims = self.verify_refresh(refresh_token)
        record = await self.credentials.consume_refresh_token(claims.sub, hash_token(refresh_token))
        if record is None:
            logger.warning("refresh_token_rejected", user_id=claims.sub, reason="no_live_record")
            raise AuthenticationError("Invalid refresh token")
        user = await self.users.get_user(claims.sub)
        if not user or not user.is_active:
            logger.warning("refresh_token_rejected", user_id=claims.sub, reason="user_inactive")
            raise AuthenticationError("Invalid refresh token")
        pair = await self.issue(
            user,
            device_info=device_info or record.device_info,
            client_ip=client_ip or record.client_ip,
        )
        logger.info("refresh_token_rotated", user_id=user.id)
        return user, pair

    async def authenticate(self, access_token: str) -> Tuple[User, TokenClaims]:
        """Resolve an access token to its user, enforcing the session binding.

        A token whose ``jti`` is not the one recorded in the live session is
        stale (superseded by a newer login or revoked by logout) and rejected,
        as is any token for a user without a session. Inactive users and users
        under a lockout are refused too.
        """
        claims = self.verify_access(access_token)
        session = await self.credentials.get_session(claims.sub)
        if session is None:
            logger.info("access_token_rejected", user_id=claims.sub, reason="no_session")
            raise AuthenticationError("Session expired")
        if not hmac.compare_digest(session.token_id, claims.jti):
            logger.info("access_token_rejected", user_id=claims.sub, reason="stale_jti")
            raise AuthenticationError("Session superseded")
        user = await self.users.get_user(claims.sub)
        if not user or not user.is_active:
            logger.warning("access_token_rejected", user_id=claims.sub, reason="user_inactive")
            raise AuthenticationError("User not found or inactive")
        if user.is_locked(self._clock()):
            logger.warning("access_token_rejected", user_id=claims.sub, reason="account_locked")
            raise AuthenticationError("Account is temporarily locked")
        return user, claims

    async def revoke(self, user_id: str, refresh_token: Optional[str] = None) -> None:
        """Single-device logout: drop one refresh token and the session."""
        if refresh_token:
            try:
                claims = self.verify_refresh(refresh_token)
            except AuthenticationError as exc:
                logger.info("logout_refresh_token_ignored", user_id=user_id, reason=exc.message)
            else:
                if claims.sub == user_id:
                    await self.credentials.revoke_refresh_token(user_id, hash_token(refresh_token))
        await self.credentials.delete_session(user_id)
        logger.info("session_revoked", user_id=user_id)

    async def revoke_all(self, user_id: str) -> None:
        """Invalidate every refresh token and the session; safe to repeat."""
        await self.credentials.revoke_all_refresh_tokens(user_id)
        await self.credentials.delete_session(user_id)
        logger.info("all_sessions_revoked", user_id=user_id)


__all__ = [
    "TokenClaims",
    "TokenPair",
    "TokenService",
    "extract_bearer",
    "hash_token",
]
