"""Application settings using Pydantic for environment-based configuration."""
import re
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VPA_PATTERN = re.compile(r"^[\w.-]+@[\w.-]+$")
KNOWN_CHANNELS = ("gpay", "phonepe", "paytm", "bhim")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./upi_orders.db",
        description="SQLAlchemy async database URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="upi-orders", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Order defaults (used until an operator stores settings)
    default_timer_duration_minutes: int = Field(
        default=9, ge=1, le=60, description="Order validity window in minutes"
    )
    default_enabled_channels: str = Field(
        default=",".join(KNOWN_CHANNELS),
        description="Enabled payment channels (comma-separated)",
    )
    static_pay_address: Optional[str] = Field(
        default=None, description="Pay address that overrides the one supplied per order"
    )

    # Expiration sweeper
    sweep_interval_seconds: float = Field(default=60.0, gt=0, description="Sweep interval (seconds)")
    sweep_batch_size: int = Field(default=500, gt=0, description="Max orders expired per sweep")
    cron_secret_token: Optional[str] = Field(
        default=None, description="Bearer token required by the expire endpoint"
    )

    # Audit trail
    audit_retry_max_attempts: int = Field(
        default=5, ge=1, description="Attempts before a failed audit entry is dropped"
    )
    audit_retry_queue_max: int = Field(
        default=1000, ge=1, description="Failed audit entries held for retry before the oldest is dropped"
    )
    audit_retry_interval_seconds: float = Field(
        default=30.0, gt=0, description="How often the API process retries failed audit writes"
    )
    audit_retention_days: int = Field(
        default=365, ge=1, description="Audit entries older than this are purged"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("static_pay_address")
    @classmethod
    def validate_static_pay_address(cls, v: Optional[str]) -> Optional[str]:
        """Reject malformed static pay addresses at startup."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not VPA_PATTERN.match(v):
            raise ValueError("Invalid UPI ID format")
        return v

    @field_validator("default_enabled_channels")
    @classmethod
    def validate_channels(cls, v: str) -> str:
        """Only known payment channels may be enabled."""
        channels = [c.strip().lower() for c in v.split(",") if c.strip()]
        unknown = sorted(set(channels) - set(KNOWN_CHANNELS))
        if unknown:
            raise ValueError(f"Unknown payment channels: {unknown}")
        return ",".join(channels)

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_enabled_channels(self) -> frozenset:
        """Parse enabled channels from comma-separated string."""
        return frozenset(c for c in self.default_enabled_channels.split(",") if c)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
