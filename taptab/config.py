from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from taptab.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than this are rejected outright
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential core."""

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (generated secrets, runtime reset).",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    redis_key_prefix: str = env_field("auth", "REDIS_KEY_PREFIX")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taptab", "JWT_ISSUER")
    jwt_audience: str = env_field("taptab-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime without remember-me",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime without remember-me",
    )
    remember_me_factor: int = env_field(
        30,
        "REMEMBER_ME_FACTOR",
        description="Multiplier applied to both lifetimes when remember-me is requested",
    )
    token_clock_skew_seconds: int = env_field(0, "TOKEN_CLOCK_SKEW_SECONDS")

    otp_secret: str | None = env_field(
        None,
        "OTP_SECRET",
        description="Key for OTP code hashes; falls back to JWT_SECRET",
    )
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_code_length: int = env_field(6, "OTP_CODE_LENGTH")

    failed_attempt_retention_days: int = env_field(30, "FAILED_ATTEMPT_RETENTION_DAYS")
    rate_limit_window_seconds: int = env_field(3600, "RATE_LIMIT_WINDOW_SECONDS")
    otp_request_limit: int = env_field(5, "OTP_REQUEST_LIMIT")
    otp_verify_limit: int = env_field(10, "OTP_VERIFY_LIMIT")
    login_limit: int = env_field(20, "LOGIN_LIMIT")

    cron_secret: str | None = env_field(
        None,
        "CRON_SECRET",
        description="Shared secret for the cron endpoints; unset disables them",
    )

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "remember_me_factor",
        "otp_ttl_seconds",
        "otp_max_attempts",
        "failed_attempt_retention_days",
        "rate_limit_window_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("otp_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_code_length must be between 4 and 10")
        return value

    @field_validator("token_clock_skew_seconds")
    @classmethod
    def _validate_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("token_clock_skew_seconds cannot be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        if not info.data.get("test_mode"):
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET unset; generated an ephemeral secret for TEST_MODE",
        )
        return secrets.token_urlsafe(64)

    @property
    def effective_otp_secret(self) -> str:
        return self.otp_secret or self.jwt_secret


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
