"""Application settings and logging configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal

import structlog
from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "epic-notes"}


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "test", "staging", "production"]
    service: str = "epic-notes"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    public_base_url: AnyHttpUrl = Field(
        default="http://localhost:8000",
        validate_default=True,
        description="Origin used to build links placed in outgoing emails.",
    )


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = Field(description="Async SQLAlchemy URL using asyncpg driver.")

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str) -> str:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: str = Field(description="Redis URL.")

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str) -> str:
        """Ensure the Redis URL uses a supported scheme."""
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class SessionSettings(BaseModel):
    """Session lifetime and cookie settings."""

    cookie_secret: SecretStr = Field(min_length=16)
    ttl_seconds: int = Field(default=60 * 60 * 24 * 30, ge=60)
    flow_ttl_seconds: int = Field(default=600, ge=30)
    two_factor_freshness_seconds: int = Field(default=60 * 60 * 2, ge=60)
    secure_cookies: bool = True


class VerificationSettings(BaseModel):
    """One-time code settings for emailed and authenticator challenges."""

    email_code_period_seconds: int = Field(default=600, ge=30)
    two_factor_enrollment_ttl_seconds: int = Field(default=600, ge=30)
    issuer: str = "Epic Notes"


class OAuthSettings(BaseModel):
    """GitHub OAuth application settings."""

    github_client_id: str
    github_client_secret: SecretStr
    github_redirect_uri: AnyHttpUrl


class EmailSettings(BaseModel):
    """Outgoing email delivery settings."""

    backend: Literal["smtp", "resend"] = "smtp"
    email_from: str = "hello@epicstack.dev"
    smtp_host: str = "localhost"
    smtp_port: int = 1025
    resend_api_key: SecretStr | None = None
    resend_api_url: str = "https://api.resend.com/emails"


class RateLimitSettings(BaseModel):
    """Rate limiting thresholds."""

    default_requests_per_minute: int = Field(default=120, ge=1)
    auth_requests_per_minute: int = Field(default=10, ge=1)


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    database: DatabaseSettings
    redis: RedisSettings
    session: SessionSettings
    verification: VerificationSettings = VerificationSettings()
    oauth: OAuthSettings
    email: EmailSettings = EmailSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
