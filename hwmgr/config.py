"""Configuration management for the hardware manager."""

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HWMGR_",
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
    )

    # Server settings
    host: str = "127.0.0.1"
    port: int = 8090
    debug: bool = False

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./hwmgr.db"

    # Namespace the inventory record and Node resources live in
    namespace: str = Field(
        default="hwmgr",
        validation_alias=AliasChoices("HWMGR_NAMESPACE", "MY_POD_NAMESPACE"),
    )
    inventory_record: str = "nodelist"

    # Store access
    conflict_retries: int = Field(default=5, ge=1)
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Requeue intervals
    requeue_short_seconds: float = 15.0
    requeue_medium_seconds: float = 60.0

    # Dispatcher
    workers: int = Field(default=4, ge=1)
    auto_reconcile: bool = True

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
