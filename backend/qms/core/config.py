"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. This ensures:
1. Type validation at startup
2. Centralized configuration
3. Documentation of available settings
4. Proper defaults
"""

from functools import lru_cache
from typing import Dict, List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to relative path for Docker, override via env for local dev
    database_url: str = "sqlite:///./data/qms.db"

    # Security
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 480  # one staff shift

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True
    token_creation_rate_limit: str = "10/minute"  # public kiosk endpoint
    queue_status_rate_limit: str = "120/minute"

    # ==========================================================================
    # Queue engine
    # ==========================================================================
    # "Today" for statistics and the peak hour are computed in this timezone
    queue_timezone: str = "UTC"

    # Token numbers are prefix + zero-padded sequence value
    token_number_padding: int = 3
    # When False, max_number on a queue setting is informational only
    enforce_max_number: bool = False

    # Default service-time estimates (minutes) when no history exists
    default_service_minutes: Dict[str, int] = {
        "instant": 3,
        "browser": 5,
        "retail": 8,
    }
    fallback_service_minutes: int = 5

    # Rolling windows for service-time averages
    service_time_window_days: int = 7
    service_time_sample_size: int = 50
    counter_service_time_window_hours: int = 24
    counter_service_time_sample_size: int = 20

    # Queue status snapshot
    status_list_limit: int = 10
    status_recent_window_hours: int = 24

    # Compare-and-set retries when two callers race for the same token
    call_next_max_attempts: int = 3

    # Push a full queue snapshot after each lifecycle change
    broadcast_queue_snapshots: bool = True

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if v == "change-me-in-production" or len(v) < 32:
            import warnings
            warnings.warn(
                "SECRET_KEY should be set and at least 32 characters for security.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator("token_number_padding", "call_next_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production safety."""
        if not self.debug:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "FATAL: Cannot start in production mode with default SECRET_KEY. "
                    "Set a secure SECRET_KEY environment variable (minimum 32 characters)."
                )
            if len(self.secret_key) < 32:
                raise ValueError(
                    f"FATAL: SECRET_KEY must be at least 32 characters in production mode "
                    f"(current length: {len(self.secret_key)})."
                )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def service_minutes_for(self, customer_type: str) -> int:
        """Default service-time estimate for a customer type."""
        return self.default_service_minutes.get(customer_type, self.fallback_service_minutes)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
