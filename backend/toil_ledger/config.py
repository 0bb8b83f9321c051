from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "TOIL Ledger"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "postgresql+asyncpg://toil_ledger:toil_ledger@db:5432/toil_ledger"
    store_backend: Literal["sql", "memory"] = "sql"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:8000"]

    # Write lock
    lock_timeout_seconds: float = 5.0

    # Calculation queue
    queue_delay_seconds: float = 0.1
    recency_window_seconds: float = 2.0
    recency_max_entries: int = 100

    # Persistent store retries
    storage_max_retries: int = 3
    storage_retry_delay_seconds: float = 0.2

    # Calculation engine
    fallback_scheduled_hours: float = 7.6
    lunch_break_hours: float = 0.5
    smoko_break_hours: float = 0.25
    min_accrual_hours: float = 0.01

    # Maintenance
    accrual_expiry_months: int = 12
    maintenance_interval_seconds: int = 86400
    deleted_entry_memory: int = 500


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
