"""Configuration management for split-ledger."""

from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database path
    database_path: Path = Path.home() / ".split_ledger" / "split_ledger.db"
    busy_timeout: float = 30.0  # Seconds to wait for the sqlite write lock

    # Ledger settings
    settlement_epsilon: Decimal = Decimal("0.01")

    # Budget settings
    default_alert_at: int = Field(default=80, ge=0, le=100)

    # Notification relay (socket room broadcaster)
    notify_url: str | None = None
    notify_token: str | None = None
    notify_timeout: float = 5.0

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check your environment and .env file.\n"
            f"Error: {e}"
        ) from e
