from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_UPSTREAMS_SOURCE_URL = (
    "https://raw.githubusercontent.com/kauam73/Servidor_api/refs/heads/main/apis.json"
)


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 4000
    bypass_api_key: str = "dev-bypass-key"
    admin_api_key: str = "dev-admin-key"
    apk_session_key: str = "dev-apk-session"
    bypass_enabled: bool = True
    upstreams_source_url: str = DEFAULT_UPSTREAMS_SOURCE_URL
    upstreams_source_timeout_seconds: float = 30.0
    upstream_timeout_seconds: float = 60.0
    upstream_connect_timeout_seconds: float = 5.0
    resolver_config_path: str = "resolver.profile.yaml"
    url_cache_path: str = "data/urls.json"
    supplementary_upstreams_path: str = "data/apisDat.json"
    status_path: str = "data/.status.json"
    apk_update_path: str = "data/.update.json"
    scripts_path: str = "data/scripts.json"
    scripts_per_day: int = 30

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
