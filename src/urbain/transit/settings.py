"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: SUBSCRIPTIONS__GRACE_PERIOD_DAYS=5
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseSettings(BaseModel):
    """Database configuration."""

    url: str = Field(
        "sqlite+aiosqlite:///./urbain_transit.sqlite",
        description="SQLAlchemy async database URL",
    )
    echo: bool = Field(False, description="Echo SQL statements")
    pool_pre_ping: bool = Field(True, description="Test connections before use")


class SubscriptionSettings(BaseModel):
    """Subscription lifecycle and payment capture configuration."""

    grace_period_days: int = Field(
        3, ge=0, description="Days a failed renewal stays ACTIVE before forced expiry"
    )
    gateway_timeout_seconds: float = Field(
        10.0, gt=0, description="Upper bound for a single payment gateway call"
    )
    max_transient_retries: int = Field(
        3, ge=0, description="Retries of a timed-out gateway call before declining"
    )
    pending_takeover_seconds: float = Field(
        30.0,
        ge=0,
        description="Seconds past the gateway timeout before a PENDING attempt counts as abandoned",
    )
    pending_cleanup_days: int = Field(
        7, ge=1, description="Age after which abandoned PENDING_PAYMENT rows are cancelled"
    )
    default_currency: str = Field("USD", description="Currency used when a plan omits one")


class SchedulerSettings(BaseModel):
    """Billing sweep configuration."""

    enabled: bool = Field(True, description="Run the renewal sweep")
    renewal_interval_seconds: float = Field(
        86400.0, gt=0, le=86400.0, description="Sweep interval (at least daily)"
    )
    max_workers: int = Field(4, ge=1, description="Concurrent renewals per sweep")
    claim_ttl_seconds: int = Field(
        900, ge=1, description="Seconds after which an unreleased sweep claim is stale"
    )


class QRSettings(BaseModel):
    """Proof-of-subscription token configuration."""

    secret_key: str = Field("change-me-in-production", description="HMAC signing secret")
    algorithm: str = Field("HS256", description="JWT algorithm")
    issuer: str = Field("urbain-transit", description="Token issuer claim")
    token_ttl_days: int | None = Field(None, description="Optional token lifetime in days")

    @field_validator("algorithm")
    def _validate_algorithm(cls, v: str) -> str:
        if v not in {"HS256", "HS384", "HS512"}:
            raise ValueError("Invalid algorithm")
        return v


class GatewaySettings(BaseModel):
    """Payment gateway collaborator configuration."""

    provider: str = Field("mock", description="Gateway provider (mock or http)")
    base_url: str = Field("https://payments.example.com", description="Gateway API base URL")
    api_key: str = Field("", description="Gateway API key")
    webhook_secret: str = Field("", description="Secret for webhook signature verification")


class ObservabilitySettings(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
    log_format: str = Field("json", description="Log format (json or console)")
    enable_metrics: bool = Field(True, description="Enable metrics collection")
    otel_service_name: str = Field("urbain-transit", description="Service name")


class CelerySettings(BaseModel):
    """Celery configuration."""

    broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
    result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
    timezone: str = Field("UTC", description="Timezone")


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("urbain-transit", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]
    subscriptions: SubscriptionSettings = SubscriptionSettings()  # type: ignore[call-arg]
    scheduler: SchedulerSettings = SchedulerSettings()  # type: ignore[call-arg]
    qr: QRSettings = Field(default_factory=QRSettings, validate_default=True)
    gateway: GatewaySettings = GatewaySettings()  # type: ignore[call-arg]
    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]
    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator("qr")
    def validate_qr_secret(cls, v: QRSettings, info: Any) -> QRSettings:
        """Refuse the placeholder signing secret in production."""
        if (
            v.secret_key == "change-me-in-production"
            and info.data.get("environment") == Environment.PRODUCTION
        ):
            raise ValueError("QR secret key must be changed in production")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
