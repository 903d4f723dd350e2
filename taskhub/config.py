from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_MIN_SECRET_LENGTH = 16


class Environment(str, Enum):
    """Deployment flavour; controls how much error detail reaches callers."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, loaded once at start-up."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field("postgresql://localhost:5432/taskhub", "DATABASE_URL")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared rate-limit store; per-process memory is used when unset",
    )
    shared_fs_root: str = env_field("/srv/taskhub", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Secrets: the legacy token and the session artifact are signed with distinct keys
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    auth_secret: str | None = env_field(None, "AUTH_SECRET")

    legacy_token_ttl_days: int = env_field(7, "LEGACY_TOKEN_TTL_DAYS", ge=1)
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)
    session_cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")

    # Argon2id cost factors
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="KiB"
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES", ge=1)
    rate_limit_sweep_interval_seconds: int = env_field(
        60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS", ge=1
    )

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS", gt=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _require_distinct_secrets(self) -> "Settings":
        for env_name, value in (("JWT_SECRET", self.jwt_secret), ("AUTH_SECRET", self.auth_secret)):
            if not value:
                raise ValueError(f"{env_name} must be set")
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{env_name} must be at least {_MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_secret == self.auth_secret:
            raise ValueError("JWT_SECRET and AUTH_SECRET must differ")
        return self


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
