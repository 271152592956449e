from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 7860
    log_level: str = "info"
    proxy_auth_token: str = "default_token"

    notion_cookie: str = ""
    proxy_urls: str = ""
    pool_config_path: str | None = None

    upstream_url: str = "https://www.notion.so/api/v3/runInferenceTranscript"
    upstream_verify_url: str | None = None
    upstream_cookie_name: str = "token_v2"
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 120.0

    credential_failure_threshold: int = 3
    credential_cooldown_seconds: float = 300.0
    egress_failure_threshold: int = 3
    egress_cooldown_seconds: float = 60.0

    stream_idle_timeout_seconds: float = 90.0
    stream_max_duration_seconds: float = 600.0

    audit_log_enabled: bool = False
    audit_log_path: str = "logs/pool_events.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def cookies_list(self) -> list[str]:
        return _split(self.notion_cookie, "|")

    @property
    def proxy_urls_list(self) -> list[str]:
        return _split(self.proxy_urls, ",")


def _split(value: str | None, separator: str) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(separator) if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
