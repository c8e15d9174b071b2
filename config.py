import logging
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="QUOTAMON_", env_file=".env", extra="ignore")

    # Storage
    data_dir: Path = Path.home() / ".quotamon"
    shared_dir: Path | None = None  # defaults to data_dir

    # Credentials
    admin_api_key: str | None = None  # Anthropic Admin API key, seeds the credential store
    keychain_service: str = "ai-quota-monitor"

    # Refresh
    refresh_interval: int = 900  # seconds, 0 = manual only
    request_timeout: float = 30.0
    resource_timeout: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    # HTTP surface
    host: str = "127.0.0.1"
    port: int = 8765

    @property
    def cache_db_path(self) -> Path:
        return self.data_dir / "usage.db"

    @property
    def shared_path(self) -> Path:
        return (self.shared_dir or self.data_dir) / "cached_usage_metrics.json"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(settings: Settings | None = None):
    settings = settings or get_settings()
    kwargs = {"format": LOG_FORMAT, "level": settings.log_level.upper()}
    if settings.log_file:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        kwargs["filename"] = str(settings.log_file)
    logging.basicConfig(**kwargs)
