"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Bucket

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "query-tracker"
    # Empty means the in-memory gateway (local development only).
    database_url: str = ""
    refresh_interval_s: float = Field(default=60.0, gt=0.0)
    gateway_timeout_s: float = Field(default=10.0, ge=0.5)
    cache_dir: Path = PROJECT_ROOT / ".cache"
    cache_ttl_s: float = Field(default=300.0, ge=0.0)
    # Bucket restored by reject-delete when a query has no previous bucket.
    reject_fallback_bucket: Bucket | None = None
    history_days: int = Field(default=30, ge=1)
    start_background_refresh: bool = True

    model_config = SettingsConfigDict(
        env_prefix="QUERY_TRACKER_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
