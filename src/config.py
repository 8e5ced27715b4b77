"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "GuardianView Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = "postgresql://localhost:5432/guardianview"
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # --- Credential vault ---
    encryption_key: str = ""  # 64 hex chars (32 bytes); never logged

    # --- Dexcom ---
    dexcom_region: str = "us"  # us | ous
    dexcom_follower_username: str | None = None
    dexcom_follower_password: str | None = None

    # --- Provider HTTP ---
    http_timeout_seconds: float = 15.0

    # --- Sync tuning ---
    sync_config_path: str | None = None  # overrides the bundled sync_config.yaml

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def follower_configured(self) -> bool:
        return bool(self.dexcom_follower_username and self.dexcom_follower_password)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
