from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_STATE_DIR = Path.home() / ".antigravity"


class Settings(BaseSettings):
    credentials_path: str = str(_STATE_DIR / "oauth_creds.json")
    credentials_dir: str | None = str(_STATE_DIR / "accounts")
    credentials_paths: str = ""
    credentials_watch_enabled: bool = True
    credentials_watch_debounce_seconds: float = 1.0
    rotation_reset_timezone_offset_hours: float = -8.0
    rotation_reset_hour: int = 0
    request_ledger_path: str = str(_STATE_DIR / "request_counts.json")
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    upstream_project_id: str | None = None
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 600.0
    upstream_write_timeout_seconds: float = 60.0
    upstream_pool_timeout_seconds: float = 10.0
    discovery_timeout_seconds: float = 10.0
    default_model: str = "gemini-2.5-pro"
    auto_model_switch_enabled: bool = True
    model_cooldown_seconds: float = 3600.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def credentials_paths_list(self) -> list[str]:
        return _split_csv(self.credentials_paths)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
