"""Application settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from TRUSTLOOP_* environment variables."""

    data_dir: Path = Path.home() / ".trustloop"
    db_name: str = "trustloop.db"
    log_level: str = "WARNING"
    history_limit: int = Field(default=100, ge=1)
    recent_window: int = Field(default=20, ge=1)
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8741, ge=1, le=65535)

    model_config = SettingsConfigDict(
        env_prefix="TRUSTLOOP_",
        extra="ignore",
    )

    @property
    def db_path(self) -> Path:
        return self.data_dir.expanduser() / self.db_name


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
