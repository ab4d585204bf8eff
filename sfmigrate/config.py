"""Process-level settings read from the environment or a .env file."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_API_VERSION,
    DEFAULT_POLLING_INTERVAL_MS,
    DEFAULT_POLLING_TIMEOUT_MS,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SFMIGRATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_version: str = DEFAULT_API_VERSION
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    polling_timeout_ms: int = DEFAULT_POLLING_TIMEOUT_MS
    http_timeout_seconds: float = 120.0
    http_max_retries: int = 3
    http_backoff_factor: float = 2.0
    output_dir: str = "./output"
    cache_dir: str = "./output/cache"
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
