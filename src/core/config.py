"""Configuration management using Pydantic Settings."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Mode(str, Enum):
    """Which payment gateway environment the backend talks to."""
    SANDBOX = "sandbox"
    PROD = "prod"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    environment: Mode = Field(default=Mode.SANDBOX, description="Gateway environment")

    # Backend API
    api_base_url: str = Field(default="http://localhost:8081/api", description="Booking backend base URL")
    api_token: Optional[str] = Field(default=None, description="Bearer token for the backend (local dev only)")
    request_timeout: float = Field(default=30.0, description="Per-request HTTP timeout in seconds")
    relay_path: str = Field(default="/payments/3ds/relay", description="Same-origin 3DS relay endpoint path")

    # Ledger
    ledger_dir: Path = Field(default=Path(".ledger"), description="Directory for per-session ledger files")

    # Reconciliation polling
    max_retries: int = Field(default=3, description="Maximum status poll attempts")
    retry_interval: float = Field(default=4.0, description="Seconds between status poll attempts")
    grace_delay: float = Field(default=2.0, description="Seconds to wait before the first poll")

    # Challenge relay and completion
    relay_submit_delay_ms: int = Field(default=100, description="Delay before the relay form auto-submits")
    redirect_delay: float = Field(default=3.0, description="Seconds before redirecting to bookings after success")
    bookings_url: str = Field(default="/my-bookings", description="Where to send the user after payment")

    # Card validation
    card_expiry_window_years: int = Field(default=20, description="How far ahead an expiry year may be")

    # GCP Configuration
    gcp_project_id: Optional[str] = Field(default=None, description="GCP project ID")
    use_secret_manager: bool = Field(default=False, description="Use GCP Secret Manager")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=True, description="Use JSON logging format")

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v):
        """Validate and normalize environment."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def validate_production_mode(self):
        """Card data must only travel over HTTPS against the production gateway."""
        if self.environment == Mode.PROD and not self.api_base_url.startswith("https://"):
            raise ConfigurationError(
                "API_BASE_URL must use HTTPS in production. "
                f"Got: {self.api_base_url}"
            )

    @property
    def relay_url(self) -> str:
        return f"{self.api_base_url}/{self.relay_path.lstrip('/')}"

    def __repr__(self):
        """Redact sensitive fields in repr."""
        safe_dict = {}
        for key, value in self.model_dump().items():
            if any(sensitive in key.lower() for sensitive in ["password", "secret", "token", "key"]):
                safe_dict[key] = "***REDACTED***"
            else:
                safe_dict[key] = value
        return f"Settings({safe_dict})"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_production_mode()
    return _settings


def reload_settings() -> Settings:
    """Reload settings (useful for testing)."""
    global _settings
    _settings = None
    return get_settings()
