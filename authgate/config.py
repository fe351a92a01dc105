from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth gateway core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gasconnect", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; generates an ephemeral JWT secret if none is set.",
    )
    service_name: str = env_field("auth-service", "SERVICE_NAME")
    cache_key_prefix: str = env_field("gasconnect:auth", "CACHE_KEY_PREFIX")

    # Token signing. The edge verifier must be configured with the same values.
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_issuer: str = env_field("gasconnect-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("gasconnect-users", "JWT_AUDIENCE")
    clock_tolerance_seconds: int = env_field(30, "JWT_CLOCK_TOLERANCE_SECONDS")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    # Credential store lifetimes
    session_ttl_seconds: int = env_field(24 * 3600, "SESSION_TTL_SECONDS")
    profile_ttl_seconds: int = env_field(4 * 3600, "PROFILE_TTL_SECONDS")
    permissions_ttl_seconds: int = env_field(2 * 3600, "PERMISSIONS_TTL_SECONDS")
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    active_user_window_seconds: int = env_field(30 * 60, "ACTIVE_USER_WINDOW_SECONDS")

    # Account lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    allow_unverified_login: bool = env_field(
        True,
        "ALLOW_UNVERIFIED_LOGIN",
        description="Whether accounts with is_verified=false may obtain tokens",
    )
    login_rate_limit: int = env_field(20, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )

    # Dependency timeouts
    db_timeout_seconds: float = env_field(30.0, "DB_TIMEOUT_SECONDS")
    cache_timeout_seconds: float = env_field(5.0, "CACHE_TIMEOUT_SECONDS")
    broker_timeout_seconds: float = env_field(5.0, "BROKER_TIMEOUT_SECONDS")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(20, "DB_POOL_MAX_SIZE")

    # Circuit breakers, one per dependency
    db_breaker_failure_threshold: int = env_field(5, "DB_BREAKER_FAILURE_THRESHOLD")
    db_breaker_reset_timeout_seconds: float = env_field(30.0, "DB_BREAKER_RESET_TIMEOUT_SECONDS")
    db_breaker_monitoring_period_seconds: float = env_field(
        60.0, "DB_BREAKER_MONITORING_PERIOD_SECONDS"
    )
    db_breaker_expected_errors: list[str] = env_field(
        ["connection terminated", "ECONNRESET", "duplicate key value"],
        "DB_BREAKER_EXPECTED_ERRORS",
    )
    cache_breaker_failure_threshold: int = env_field(3, "CACHE_BREAKER_FAILURE_THRESHOLD")
    cache_breaker_reset_timeout_seconds: float = env_field(
        15.0, "CACHE_BREAKER_RESET_TIMEOUT_SECONDS"
    )
    cache_breaker_monitoring_period_seconds: float = env_field(
        30.0, "CACHE_BREAKER_MONITORING_PERIOD_SECONDS"
    )
    cache_breaker_expected_errors: list[str] = env_field(
        ["ECONNREFUSED"], "CACHE_BREAKER_EXPECTED_ERRORS"
    )
    broker_breaker_failure_threshold: int = env_field(3, "BROKER_BREAKER_FAILURE_THRESHOLD")
    broker_breaker_reset_timeout_seconds: float = env_field(
        20.0, "BROKER_BREAKER_RESET_TIMEOUT_SECONDS"
    )
    broker_breaker_monitoring_period_seconds: float = env_field(
        45.0, "BROKER_BREAKER_MONITORING_PERIOD_SECONDS"
    )
    broker_breaker_expected_errors: list[str] = env_field(
        ["ECONNREFUSED", "channel closed"], "BROKER_BREAKER_EXPECTED_ERRORS"
    )

    event_channel: str = env_field("auth.events", "EVENT_CHANNEL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "db_breaker_expected_errors",
        "cache_breaker_expected_errors",
        "broker_breaker_expected_errors",
        mode="before",
    )
    @classmethod
    def _split_expected_errors(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        # Only the symmetric HMAC scheme shared with the edge verifier is supported
        if value != "HS256":
            raise ValueError("JWT_ALGORITHM must be HS256")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        if info.data.get("test_mode"):
            logger.warning(
                "jwt_secret_generated",
                message="JWT_SECRET not set; using an ephemeral secret for test mode",
            )
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET is required outside TEST_MODE")

    @property
    def refresh_secret(self) -> str:
        return self.jwt_refresh_secret or self.jwt_secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
