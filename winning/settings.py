from __future__ import annotations

import os
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field("sqlite+aiosqlite:///./winning.db", alias="DATABASE_URL")
    backend_session_secret: str = Field("", alias="BACKEND_SESSION_SECRET")
    log_level: str = Field("INFO", alias="BACKEND_LOG_LEVEL")

    default_timezone: str = Field("UTC", alias="DEFAULT_TIMEZONE")
    month_grid_first_weekday: int = Field(6, alias="MONTH_GRID_FIRST_WEEKDAY", ge=0, le=6)

    app_base_url: str = Field("http://localhost:3000", alias="APP_BASE_URL")
    login_path: str = Field("/login", alias="LOGIN_PATH")
    invite_ttl_hours: int = Field(72, alias="INVITE_TTL_HOURS", gt=0)

    habits_per_month_limit: int = Field(10, alias="HABITS_PER_MONTH_LIMIT", gt=0)
    win_reconcile_interval_seconds: int = Field(300, alias="WIN_RECONCILE_INTERVAL_SECONDS", gt=0)

    allowed_user_ids_raw: str = Field("", alias="ALLOWED_USER_IDS")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def allowed_user_ids(self) -> List[str]:
        return [item.strip() for item in self.allowed_user_ids_raw.split(",") if item.strip()]

    def invite_url(self, token: str) -> str:
        return f"{self.app_base_url.rstrip('/')}/invite?token={token}"


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


# For local dev convenience only.
if os.getenv("BACKEND_DEBUG_SETTINGS"):
    print(get_settings())
