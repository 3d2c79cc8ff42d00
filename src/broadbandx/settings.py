"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings use a double underscore: BILLING__TAX_RATE=0.18
"""

from decimal import Decimal
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

    url: str | None = Field(None, description="Full async database URL")
    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field("broadbandx", description="Database name")
    username: str = Field("broadbandx", description="Database username")
    password: str = Field("", description="Database password")

    # Connection pool (ignored for SQLite)
    pool_size: int = Field(10, description="Connection pool size")
    max_overflow: int = Field(20, description="Max overflow connections")
    pool_timeout: int = Field(30, description="Pool timeout in seconds")
    pool_recycle: int = Field(3600, description="Recycle connections after seconds")
    pool_pre_ping: bool = Field(True, description="Test connections before use")

    echo: bool = Field(False, description="Echo SQL statements")


class JWTSettings(BaseModel):
    """JWT verification configuration."""

    secret_key: str = Field("change-me", description="JWT secret key")
    algorithm: str = Field("HS256", description="JWT algorithm")


class ObservabilitySettings(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
    log_format: str = Field("json", description="Log format (json or console)")
    enable_correlation_ids: bool = Field(True, description="Add thread name to log entries")


class BillingSettings(BaseModel):
    """Pricing and lifecycle policy."""

    default_currency: str = Field("USD", description="Currency used when a plan omits one")
    tax_rate: Decimal = Field(Decimal("0.08"), description="Tax applied to the final price")
    discount_rate: Decimal = Field(
        Decimal("0.10"), description="Flat reduction applied when a discount code is supplied"
    )
    yearly_discount_factor: Decimal = Field(
        Decimal("0.9"), description="Yearly price as a fraction of twelve monthly payments"
    )

    # Proration
    monthly_period_days: int = Field(30, description="Days in a monthly proration period")
    yearly_period_days: int = Field(365, description="Days in a yearly proration period")

    # Refunds
    refund_window_days: int = Field(30, description="Days after start a refund remains possible")
    refund_usage_threshold_percent: Decimal = Field(
        Decimal("10"), description="Usage percentage at or above which refunds are refused"
    )


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

    # Application metadata
    app_name: str = Field("broadbandx", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")
    api_prefix: str = Field("/api", description="Prefix for all HTTP routes")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]
    jwt: JWTSettings = JWTSettings()  # type: ignore[call-arg]
    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]
    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        """Accept environment names in any case."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


settings = get_settings()
