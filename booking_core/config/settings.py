"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./bookings.db",
        description="SQLAlchemy async database URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Stripe Configuration
    stripe_secret_key: Optional[str] = Field(
        default=None, description="Stripe secret API key (sk_test_...)"
    )
    stripe_webhook_secret: Optional[str] = Field(
        default=None, description="Stripe webhook signing secret"
    )
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Paystack Configuration
    paystack_secret_key: Optional[str] = Field(
        default=None, description="Paystack secret key, also used to sign webhooks"
    )
    paystack_base_url: str = Field(
        default="https://api.paystack.co", description="Paystack API base URL"
    )

    # Gateway calls
    gateway_retry_max_attempts: int = Field(
        default=3, description="Max attempts for outbound gateway API calls"
    )
    gateway_timeout_seconds: float = Field(
        default=15.0, description="Timeout for outbound gateway API calls"
    )

    # Bookings
    reference_prefix: str = Field(default="NJ", description="Booking reference prefix")
    default_currency: str = Field(default="USD", description="Ledger currency until quoted")
    concurrency_max_attempts: int = Field(
        default=5, description="Optimistic concurrency attempts per booking mutation"
    )
    concurrency_retry_base_delay: float = Field(
        default=0.05, description="Base delay for conflict retry backoff (seconds)"
    )

    # Email notifications
    smtp_host: Optional[str] = Field(default=None, description="SMTP host (unset = log only)")
    smtp_port: int = Field(default=587, description="SMTP port")
    smtp_username: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[str] = Field(default=None, description="SMTP password")
    smtp_use_tls: bool = Field(default=True, description="Use STARTTLS")
    smtp_from: str = Field(
        default='"Njeyali Travel" <noreply@njeyalitravel.com>',
        description="From address for outgoing mail",
    )

    # Application Configuration
    app_name: str = Field(default="booking-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the Stripe secret key looks like a secret key."""
        if v is None:
            return v
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("reference_prefix", "default_currency")
    @classmethod
    def validate_upper(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    @property
    def paystack_enabled(self) -> bool:
        return bool(self.paystack_secret_key)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
