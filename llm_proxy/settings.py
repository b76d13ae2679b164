from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TARGET_API_URL = "https://api.openai.com"


class Settings(BaseSettings):
    target_api_url: str = DEFAULT_TARGET_API_URL
    target_api_key: str | None = None
    admin_password: str | None = None
    admin_auth_mode: Literal["credential", "disabled"] = "credential"
    admin_html_path: str | None = None
    debug: bool = False
    environment: str = "development"
    store_backend: Literal["durable", "memory"] = "durable"
    store_path: str = "data"
    store_name: str = "llm-proxy-storage"
    log_capacity: int = 1000
    upstream_timeout_seconds: float = 600.0
    upstream_connect_timeout_seconds: float = 10.0
    forwarded_allow_ips: str = "127.0.0.1"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def admin_password_value(self) -> str | None:
        value = (self.admin_password or "").strip()
        return value or None

    @property
    def target_api_key_value(self) -> str | None:
        value = (self.target_api_key or "").strip()
        return value or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
