from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Record store
    database_url: str = "sqlite:///./mediaflow.db"

    # Pipeline
    stage_delay_seconds: float = Field(default=1.0, ge=0)
    flag_threshold: float = Field(default=0.7, ge=0, le=1)

    # Watchdog
    watchdog_interval_seconds: float = Field(default=60.0, gt=0)
    watchdog_poll_seconds: float = Field(default=5.0, gt=0)

    # Shutdown
    shutdown_timeout_seconds: float = Field(default=10.0, ge=0)

    # Notifications
    subscriber_buffer_size: int = Field(default=100, ge=1)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
