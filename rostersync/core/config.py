from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "/data/rostersync.db"

    # Remote registry connection
    registry_base_url: str = "https://app.twizzit.com"
    registry_timeout: float = 30.0

    # Server-held secret used to encrypt stored registry passwords
    credential_encryption_key: str = ""

    # Upper bound for a single sync run, in seconds
    sync_run_timeout: float = 900.0

    # Automatic sync
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    daily_sync_hour: int = 2

    # Optional settings
    log_level: str = "INFO"
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
