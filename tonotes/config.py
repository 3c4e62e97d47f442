from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tonotes.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session core."""

    model_config = ConfigDict(extra="ignore")

    jwt_secret_key: str = env_field(
        "", "JWT_SECRET_KEY", validate_default=True, description="HMAC key for tokens"
    )
    jwt_expiration_time: int = env_field(3600, "JWT_EXPIRATION_TIME")
    refresh_token_expiration_time: int = env_field(
        604800, "REFRESH_TOKEN_EXPIRATION_TIME"
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/tonotes", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Run without Redis using in-process revocation (development only)",
    )
    store_timeout_seconds: float = env_field(10.0, "STORE_TIMEOUT_SECONDS")
    # Session policy
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER")
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    session_idle_hours: int = env_field(48, "SESSION_IDLE_HOURS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    # Profile mutation cooldowns
    password_change_cooldown_days: int = env_field(14, "PASSWORD_CHANGE_COOLDOWN_DAYS")
    email_change_cooldown_days: int = env_field(14, "EMAIL_CHANGE_COOLDOWN_DAYS")
    # Second factor
    mfa_issuer: str = env_field("ToNotes", "MFA_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET_KEY",
    )
    # Session location lookup
    geoip_enabled: bool = env_field(False, "GEOIP_ENABLED")
    geoip_url: str = env_field("https://ipapi.co/{ip}/json/", "GEOIP_URL")
    geoip_timeout_seconds: float = env_field(2.0, "GEOIP_TIMEOUT_SECONDS")

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

    @field_validator("jwt_secret_key")
    @classmethod
    def _require_jwt_secret(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("JWT_SECRET_KEY must be set to a non-empty value")
        return value

    @field_validator(
        "jwt_expiration_time",
        "refresh_token_expiration_time",
        "max_sessions_per_user",
        "session_ttl_hours",
        "session_idle_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("password_change_cooldown_days", "email_change_cooldown_days")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("cooldown must not be negative")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @property
    def secret_encryption_key(self) -> str:
        return self.mfa_secret_key or self.jwt_secret_key


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None

