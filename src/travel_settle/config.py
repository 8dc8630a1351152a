"""Configuration management for Travel Settle."""

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

    # Exchange rate API
    exchange_rate_api_url: str = "https://api.exchangerate.host"
    exchange_rate_base: str = "USD"  # Live tables are quoted against this base
    exchange_rate_timeout: float = 10.0  # Seconds before falling back
    exchange_rate_cache_ttl: int = 3600  # Seconds a fetched table stays fresh

    # Project defaults
    default_currency: str = "TWD"
    default_precision: int = Field(default=2, ge=0)

    # Reject expenses that reference unknown members instead of ignoring them
    strict_validation: bool = False

    # Database path
    database_path: Path = Path.home() / ".travel_settle" / "travel_settle.db"

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
            f"Failed to load settings. Check your .env file and environment "
            f"variables. See .env.example for reference.\n"
            f"Error: {e}"
        ) from e
