from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class EventBackend(str, Enum):
    """Where lifecycle events are delivered."""

    LOG = "log"
    REDIS = "redis"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs: Any):
    """Attach an environment variable name to a settings field."""
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and passed explicitly.

    Instances are immutable. Nothing in the package reads the environment after
    ``from_env`` returns.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    # token signing
    jwt_secret: str = env_field(..., "JWT_SECRET", min_length=16)
    jwt_issuer: str = env_field("ms-ga-identifier", "JWT_ISSUER")
    jwt_audience: str = env_field("gym-api", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(24 * 3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    reset_token_ttl_seconds: int = env_field(3600, "RESET_TOKEN_TTL_SECONDS")

    # login policy
    failure_window_seconds: int = env_field(15 * 60, "FAILURE_WINDOW_SECONDS")
    require_verified_email: bool = env_field(False, "REQUIRE_VERIFIED_EMAIL")

    # role/permission service
    auth_service_url: str = env_field("http://localhost:8081", "AUTH_SERVICE_URL")
    auth_service_timeout_seconds: float = env_field(30.0, "AUTH_SERVICE_TIMEOUT_SECONDS")

    # events
    event_backend: EventBackend = env_field(EventBackend.LOG, "EVENT_BACKEND")
    redis_url: str | None = env_field(None, "REDIS_URL")
    event_stream: str = env_field("identity-events", "EVENT_STREAM")

    # storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: str | None = env_field(None, "DATABASE_URL")

    # email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from: str | None = env_field(None, "EMAIL_FROM")
    email_from_name: str = env_field("Gym API", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # logging / http
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        env_file_values = dotenv_values(env_file)
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_file_values.get(env_name) is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "reset_token_ttl_seconds",
        "failure_window_seconds",
    )
    @classmethod
    def _positive_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("auth_service_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_backends(self) -> "Settings":
        if self.event_backend == EventBackend.REDIS and not self.redis_url:
            raise ValueError("EVENT_BACKEND=redis requires REDIS_URL")
        if not self.use_memory_store and not self.database_url:
            raise ValueError("DATABASE_URL is required when USE_MEMORY_STORE is false")
        return self


__all__ = ["EventBackend", "Settings", "env_field"]
