"""Configuration management for split-ledger."""

from decimal import Decimal
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ledger defaults
    default_currency: str = "USD"
    percentage_tolerance: Decimal = Decimal("0.01")  # Allowed drift from 100%

    # Store settings
    store_timeout_seconds: float = 5.0  # Bounded wait for the ledger lock

    # Accounts API (optional linked transfers)
    accounts_api_url: str | None = None
    accounts_api_token: str | None = None

    # Database path
    database_path: Path = Path.home() / ".split_ledger" / "split_ledger.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Failed to load settings. Check your .env file "
            f"and environment variables. See .env.example for reference.\n"
            f"Error: {e}"
        ) from e
