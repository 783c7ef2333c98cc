"""Configuration for the DID engine.

Security Note:
    - Billing API credentials MUST be provided via environment variables
    - The engine refuses to talk to the billing API without them
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings, read from ``DID_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DID_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    service_name: str = "did-engine"
    log_level: str = "INFO"
    log_format: str = "pretty"

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./did_engine.db",
        description="SQLAlchemy connection URL",
    )
    database_echo: bool = False

    # Inventory
    reservation_ttl_hours: int = Field(default=24, ge=1)

    # External billing system
    billing_api_url: Optional[str] = None
    billing_api_identifier: Optional[str] = None
    billing_api_secret: Optional[str] = None
    billing_api_timeout: float = 30.0
    billing_payment_method: str = "banktransfer"
    invoice_due_days: int = Field(default=30, ge=0)

    # Sync worker
    sync_lease_seconds: int = Field(default=300, ge=1)
    sync_poll_interval: float = 5.0
    sync_batch_size: int = 50
    sync_on_create: bool = False

    # Balance top-ups
    topup_min_amount: Decimal = Decimal("5.00")
    topup_max_amount: Decimal = Decimal("1000.00")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate the log output format."""
        fmt = v.lower()
        if fmt not in ("json", "pretty", "simple"):
            raise ValueError(f"Invalid log format: {v}")
        return fmt

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() in ("production", "prod", "staging")

    @property
    def billing_api_configured(self) -> bool:
        """Check if all billing API credentials are present."""
        return bool(
            self.billing_api_url
            and self.billing_api_identifier
            and self.billing_api_secret
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
