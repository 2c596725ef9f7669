"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
Runtime-tunable automation values live in the ``platform_settings`` table;
the ``automation`` section here only supplies their defaults.
"""

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


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: AUTOMATION__GRACE_PERIOD_DAYS=10
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("vilo-automation", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("vilo", description="Database name")
        username: str = Field("vilo", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        timezone: str = Field("UTC", description="Timezone")
        enable_utc: bool = Field(True, description="Enable UTC")

        worker_concurrency: int = Field(2, description="Worker concurrency")
        worker_prefetch_multiplier: int = Field(1, description="Prefetch multiplier")
        task_soft_time_limit: int = Field(300, description="Soft time limit")
        task_time_limit: int = Field(600, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")
        enable_callsite_info: bool = Field(False, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Subscription Automation
    # ============================================================

    class AutomationSettings(BaseModel):
        """Defaults for subscription automation.

        Values stored in ``platform_settings`` take precedence at run time.
        """

        trial_ending_notice_days: int = Field(3, description="Days before trial end to notify")
        grace_period_days: int = Field(7, description="Length of the payment grace period")
        payment_retry_intervals: list[int] = Field(
            default_factory=lambda: [1, 3, 7],
            description="Days between payment retries; its length is the retry budget",
        )
        limit_warning_threshold: float = Field(
            0.8, description="Usage fraction that triggers a warning"
        )
        auto_cancel_after_grace: bool = Field(
            True, description="Cancel the subscription when its grace period expires"
        )
        downgrade_to_free_on_cancel: bool = Field(
            True, description="Expired trials become 'cancelled' instead of 'expired'"
        )
        renewal_reminder_days: int = Field(7, description="Days before renewal to remind")

        # Sweep control
        batch_size: int = Field(100, description="Rows fetched per page during a sweep")
        sweep_time_limit_seconds: float = Field(
            240.0, description="Wall-clock budget for a single sweep"
        )

        # Scheduling
        daily_jobs_hour: int = Field(2, description="UTC hour for the daily jobs")
        hourly_jobs_minute: int = Field(5, description="Minute past the hour for hourly jobs")

    automation: AutomationSettings = AutomationSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
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
