from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from otpauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/otpauth", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_statement_timeout_ms: int = env_field(
        5000,
        "DB_STATEMENT_TIMEOUT_MS",
        description="Per-statement timeout so a request transaction cannot hang",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables sync Redis client, in-process fallbacks and runtime resets",
    )

    default_access_token_expire_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_EXPIRE_MINUTES",
        description="Token TTL written to the settings row when it is first created",
    )

    # OTP issuance policy: cooldown on unused codes plus a rolling window cap
    otp_cooldown_seconds: int = env_field(120, "OTP_COOLDOWN_SECONDS")
    otp_window_seconds: int = env_field(600, "OTP_WINDOW_SECONDS")
    otp_max_per_window: int = env_field(3, "OTP_MAX_PER_WINDOW")

    login_session_ttl_seconds: int = env_field(180, "LOGIN_SESSION_TTL_SECONDS")
    login_session_max_tries: int = env_field(3, "LOGIN_SESSION_MAX_TRIES")

    auth_rate_limit: int = env_field(5, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_trust_forwarded: bool = env_field(
        True, "AUTH_RATE_LIMIT_TRUST_FORWARDED"
    )
    user_rate_limit: int = env_field(30, "USER_RATE_LIMIT")
    user_rate_limit_window_seconds: int = env_field(60, "USER_RATE_LIMIT_WINDOW_SECONDS")
    user_rate_limit_trust_forwarded: bool = env_field(
        True, "USER_RATE_LIMIT_TRUST_FORWARDED"
    )
    admin_rate_limit: int = env_field(60, "ADMIN_RATE_LIMIT")
    admin_rate_limit_window_seconds: int = env_field(
        60, "ADMIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    admin_rate_limit_trust_forwarded: bool = env_field(
        True, "ADMIN_RATE_LIMIT_TRUST_FORWARDED"
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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
        "db_pool_min_size",
        "db_pool_max_size",
        "db_statement_timeout_ms",
        "default_access_token_expire_minutes",
        "otp_cooldown_seconds",
        "otp_window_seconds",
        "otp_max_per_window",
        "login_session_ttl_seconds",
        "login_session_max_tries",
        "auth_rate_limit",
        "auth_rate_limit_window_seconds",
        "user_rate_limit",
        "user_rate_limit_window_seconds",
        "admin_rate_limit",
        "admin_rate_limit_window_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    def rate_limit_for(self, group: str) -> tuple[int, int, bool]:
        """Return ``(max_requests, window_seconds, trust_forwarded)`` for a route group."""
        try:
            return (
                getattr(self, f"{group}_rate_limit"),
                getattr(self, f"{group}_rate_limit_window_seconds"),
                getattr(self, f"{group}_rate_limit_trust_forwarded"),
            )
        except AttributeError:
            logger.error("rate_limit_group_unknown", group=group)
            raise ValueError(f"unknown rate limit group: {group}") from None


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
