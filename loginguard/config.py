from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from loginguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class LoginPolicy(BaseModel):
    """Lockout and session policy, adjustable at runtime via ``configure``."""

    max_attempts: int = Field(5, gt=0)
    rate_limit_window_ms: int = Field(15 * 60 * 1000, gt=0)
    block_duration_ms: int = Field(30 * 60 * 1000, gt=0)
    session_timeout_ms: int = Field(8 * 60 * 60 * 1000, gt=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def rate_limit_window_seconds(self) -> float:
        return self.rate_limit_window_ms / 1000.0

    @property
    def block_duration_seconds(self) -> float:
        return self.block_duration_ms / 1000.0

    @property
    def session_timeout_seconds(self) -> float:
        return self.session_timeout_ms / 1000.0


class Settings(BaseModel):
    """Runtime settings for the login orchestrator."""

    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        description="Failed attempts allowed per identifier within the window",
    )
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    block_duration_seconds: int = env_field(30 * 60, "BLOCK_DURATION_SECONDS")
    session_timeout_seconds: int = env_field(8 * 60 * 60, "SESSION_TIMEOUT_SECONDS")
    verification_timeout_seconds: float = env_field(
        5.0,
        "VERIFICATION_TIMEOUT_SECONDS",
        description="Upper bound on a single call to the credential backend",
    )
    password_min_length: int = env_field(
        8, "PASSWORD_MIN_LENGTH", description="Minimum length used by the strength advisor"
    )
    expose_backend_errors: bool = env_field(
        True,
        "EXPOSE_BACKEND_ERRORS",
        description="Return the backend's rejection message verbatim instead of a generic one",
    )
    reset_rate_limit_on_success: bool = env_field(True, "RESET_RATE_LIMIT_ON_SUCCESS")
    require_csrf_token: bool = env_field(
        False,
        "REQUIRE_CSRF_TOKEN",
        description="Reject attempts that carry no CSRF token at all",
    )
    session_cleanup_interval_minutes: int = env_field(5, "SESSION_CLEANUP_INTERVAL_MINUTES")
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_redis_store: bool = env_field(
        False,
        "USE_REDIS_STORE",
        description="Share rate limits and sessions across instances through Redis",
    )
    credential_backend_url: str | None = env_field(None, "CREDENTIAL_BACKEND_URL")
    credential_backend_api_key: str | None = env_field(None, "CREDENTIAL_BACKEND_API_KEY")
    test_mode: bool = env_field(False, "TEST_MODE")

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
        "max_login_attempts",
        "rate_limit_window_seconds",
        "block_duration_seconds",
        "session_timeout_seconds",
        "password_min_length",
        "session_cleanup_interval_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("verification_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("verification timeout must be positive")
        return value

    @model_validator(mode="after")
    def _check_redis(self) -> "Settings":
        if self.use_redis_store and not self.redis_url:
            raise ValueError("USE_REDIS_STORE requires REDIS_URL")
        return self

    def login_policy(self) -> LoginPolicy:
        return LoginPolicy(
            max_attempts=self.max_login_attempts,
            rate_limit_window_ms=self.rate_limit_window_seconds * 1000,
            block_duration_ms=self.block_duration_seconds * 1000,
            session_timeout_ms=self.session_timeout_seconds * 1000,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_redis_store=_settings_cache.use_redis_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
