"""
Configuration module with strict validation.

Key principles:
- APP STARTUP requires only DATABASE_URL
- Merge notification email is OPTIONAL (merges succeed without it, delivery is reported as skipped)
- Rollback window and triage thresholds are configurable
- Safe defaults for all optional settings
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rental_admin.core.api_errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings with validation.

    Loads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database (REQUIRED for API startup)
    database_url: str = Field(
        ...,
        description="PostgreSQL connection URL"
    )

    # Admin JWT verification (tokens are issued by the auth service)
    jwt_secret_key: str = Field(
        default="rental-admin-secret-change-in-production",
        description="Shared secret used to verify admin bearer tokens"
    )

    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm"
    )

    # Merge workflow
    rollback_window_minutes: int = Field(
        default=30,
        ge=1,
        le=1440,
        description="How long a committed merge can be rolled back"
    )

    stale_case_hours: int = Field(
        default=48,
        ge=1,
        le=24 * 90,
        description="Hours after which an untouched duplicate group counts as stale"
    )

    scan_limit: int = Field(
        default=5000,
        ge=10,
        le=200000,
        description="Maximum rows read per entity type during a duplicate scan"
    )

    # Merge notification email (OPTIONAL)
    email_api_url: Optional[str] = Field(
        default=None,
        description="Transactional email HTTP endpoint"
    )

    email_api_key: Optional[str] = Field(
        default=None,
        description="API key for the transactional email endpoint"
    )

    email_from: str = Field(
        default="no-reply@rental-admin.local",
        description="Sender address for account notifications"
    )

    email_provider: str = Field(
        default="http",
        description="Provider label reported back in delivery outcomes"
    )

    email_timeout_seconds: float = Field(
        default=10.0,
        ge=1.0,
        le=60.0,
        description="Timeout for a single email API request"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @property
    def email_enabled(self) -> bool:
        """True when both the email endpoint and its key are configured."""
        return bool(self.email_api_url and self.email_api_key)

    def require_email_api(self) -> str:
        """
        Get the email API URL, raising a clear error if email is not configured.

        Raises:
            ConfigurationError: If EMAIL_API_URL or EMAIL_API_KEY is missing

        Returns:
            str: The email API URL
        """
        if not self.email_enabled:
            raise ConfigurationError(
                "EMAIL_API_URL and EMAIL_API_KEY are required to send merge notifications. "
                "Set them in your .env file or environment variables.",
                missing_config="EMAIL_API_URL" if not self.email_api_url else "EMAIL_API_KEY",
            )
        return self.email_api_url


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    This pattern allows:
    - Easy testing (can reset settings between tests)
    - Lazy loading (only loads when first accessed)
    - Singleton pattern (same instance used everywhere)
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the global settings instance.

    Useful for testing to ensure clean state between tests.
    """
    global _settings
    _settings = None
