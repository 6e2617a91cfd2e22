"""Application configuration loaded from environment variables."""

from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Vigor"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str | None = None  # unset → in-memory store
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # --- Day keys ---
    local_timezone: str = "UTC"  # IANA name; fixes local midnight and the nocturnal window

    # --- Whoop (optional cloud provider) ---
    whoop_api_base: str = "https://api.prod.whoop.com/developer"
    whoop_access_token: str | None = None

    # --- Sync ---
    sync_timeout_seconds: float = 120.0
    background_sync_enabled: bool = False

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.local_timezone)


@lru_cache
def get_settings() -> Settings:
    return Settings()
