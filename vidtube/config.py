from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from vidtube.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where rate-limit counters live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and interaction service."""

    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8000, "PORT")
    reload: bool = env_field(False, "RELOAD", description="Restart the server on code changes")
    database_url: str = env_field(
        "postgresql://localhost:5432/vidtube", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for test runs",
    )
    # Token authority
    access_token_secret: str = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    refresh_token_secret: str = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("vidtube", "JWT_ISSUER")
    jwt_audience: str = env_field("vidtube-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated past a token's exp claim",
    )
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        10 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    # Password reset
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES")
    reset_revokes_sessions: bool = env_field(
        True,
        "RESET_REVOKES_SESSIONS",
        description="Clear the stored refresh token when a reset completes",
    )
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("VidTube", "EMAIL_FROM_NAME")
    # Cookies / CORS
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("none", "COOKIE_SAMESITE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Rate limiting
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY, "RATE_LIMIT_BACKEND"
    )
    rate_limit_sweep_interval_seconds: int = env_field(
        300, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )
    auth_rate_limit_max: int = env_field(5, "AUTH_RATE_LIMIT_MAX")
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    api_rate_limit_max: int = env_field(100, "API_RATE_LIMIT_MAX")
    api_rate_limit_window_seconds: int = env_field(
        15 * 60, "API_RATE_LIMIT_WINDOW_SECONDS"
    )
    upload_rate_limit_max: int = env_field(10, "UPLOAD_RATE_LIMIT_MAX")
    upload_rate_limit_window_seconds: int = env_field(
        60 * 60, "UPLOAD_RATE_LIMIT_WINDOW_SECONDS"
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Key rate limits on the first X-Forwarded-For hop",
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("COOKIE_SAMESITE must be lax, strict or none")
        return normalized

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_rate_limit_backend(cls, value: RateLimitBackend) -> RateLimitBackend:
        return RateLimitBackend(value)

    @field_validator("access_token_secret", "refresh_token_secret", mode="before")
    @classmethod
    def _ensure_token_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        logger.warning(
            "token_secret_generated",
            setting=info.field_name,
            message="Secret not configured; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)


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
