from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from travelauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory fallbacks, runtime resets).",
    )

    # Signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("travelauth", "JWT_ISSUER")
    jwt_audience: str = env_field("travel-clients", "JWT_AUDIENCE")
    clock_skew_seconds: int = env_field(
        30,
        "CLOCK_SKEW_SECONDS",
        description="Leeway applied to token expiry checks for clock drift across nodes",
    )

    # Token and session lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(60, "SESSION_TTL_MINUTES")
    remember_me_session_ttl_minutes: int = env_field(
        30 * 24 * 60, "REMEMBER_ME_SESSION_TTL_MINUTES"
    )
    max_sessions_per_user: int = env_field(
        5,
        "MAX_SESSIONS_PER_USER",
        description="Oldest sessions beyond this count are invalidated on login",
    )
    rotate_session_on_refresh: bool = env_field(False, "ROTATE_SESSION_ON_REFRESH")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES"
    )

    # Password hashing cost (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Every collaborator call is bounded by this timeout
    external_call_timeout_seconds: float = env_field(5.0, "EXTERNAL_CALL_TIMEOUT_SECONDS")

    # Rate limits (attempts per fixed window)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    count_successful_logins: bool = env_field(
        False,
        "COUNT_SUCCESSFUL_LOGINS",
        description="When false, a successful login gives its attempt back to the login bucket",
    )
    signup_rate_limit: int = env_field(3, "SIGNUP_RATE_LIMIT")
    signup_rate_limit_window_seconds: int = env_field(3600, "SIGNUP_RATE_LIMIT_WINDOW_SECONDS")
    reset_rate_limit: int = env_field(3, "RESET_RATE_LIMIT")
    reset_rate_limit_window_seconds: int = env_field(3600, "RESET_RATE_LIMIT_WINDOW_SECONDS")
    reset_confirm_rate_limit: int = env_field(10, "RESET_CONFIRM_RATE_LIMIT")
    reset_confirm_rate_limit_window_seconds: int = env_field(
        3600, "RESET_CONFIRM_RATE_LIMIT_WINDOW_SECONDS"
    )
    password_change_rate_limit: int = env_field(5, "PASSWORD_CHANGE_RATE_LIMIT")
    password_change_rate_limit_window_seconds: int = env_field(
        15 * 60, "PASSWORD_CHANGE_RATE_LIMIT_WINDOW_SECONDS"
    )
    refresh_rate_limit: int = env_field(30, "REFRESH_RATE_LIMIT")
    refresh_rate_limit_window_seconds: int = env_field(
        15 * 60, "REFRESH_RATE_LIMIT_WINDOW_SECONDS"
    )
    verification_request_rate_limit: int = env_field(3, "VERIFICATION_REQUEST_RATE_LIMIT")
    verification_request_rate_limit_window_seconds: int = env_field(
        3600, "VERIFICATION_REQUEST_RATE_LIMIT_WINDOW_SECONDS"
    )
    verification_confirm_rate_limit: int = env_field(10, "VERIFICATION_CONFIRM_RATE_LIMIT")
    verification_confirm_rate_limit_window_seconds: int = env_field(
        3600, "VERIFICATION_CONFIRM_RATE_LIMIT_WINDOW_SECONDS"
    )
    account_lockout_threshold: int = env_field(
        10,
        "ACCOUNT_LOCKOUT_THRESHOLD",
        description="Failed logins per account (across all clients) before the account locks",
    )
    account_lockout_window_seconds: int = env_field(15 * 60, "ACCOUNT_LOCKOUT_WINDOW_SECONDS")
    api_rate_limit_free: int = env_field(5, "API_RATE_LIMIT_FREE")
    api_rate_limit_basic: int = env_field(20, "API_RATE_LIMIT_BASIC")
    api_rate_limit_premium: int = env_field(50, "API_RATE_LIMIT_PREMIUM")
    api_rate_limit_enterprise: int = env_field(200, "API_RATE_LIMIT_ENTERPRISE")
    api_rate_limit_window_seconds: int = env_field(60, "API_RATE_LIMIT_WINDOW_SECONDS")

    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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
        "session_ttl_minutes",
        "remember_me_session_ttl_minutes",
        "reset_token_ttl_minutes",
        "email_verification_ttl_minutes",
        "max_sessions_per_user",
        "login_rate_limit_window_seconds",
        "signup_rate_limit_window_seconds",
        "reset_rate_limit_window_seconds",
        "reset_confirm_rate_limit_window_seconds",
        "password_change_rate_limit_window_seconds",
        "refresh_rate_limit_window_seconds",
        "verification_request_rate_limit_window_seconds",
        "verification_confirm_rate_limit_window_seconds",
        "account_lockout_window_seconds",
        "api_rate_limit_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator(
        "login_rate_limit",
        "signup_rate_limit",
        "reset_rate_limit",
        "reset_confirm_rate_limit",
        "password_change_rate_limit",
        "refresh_rate_limit",
        "verification_request_rate_limit",
        "verification_confirm_rate_limit",
        "account_lockout_threshold",
        "api_rate_limit_free",
        "api_rate_limit_basic",
        "api_rate_limit_premium",
        "api_rate_limit_enterprise",
    )
    @classmethod
    def _require_positive_limit(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("rate limits must be positive")
        return value

    @field_validator("clock_skew_seconds")
    @classmethod
    def _validate_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock skew cannot be negative")
        if value > 300:
            logger.warning("clock_skew_large", clock_skew_seconds=value)
        return value

    @field_validator("external_call_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("external call timeout must be positive")
        return value


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
