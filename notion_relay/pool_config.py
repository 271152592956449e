from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from notion_relay.settings import Settings


class PoolFile(BaseModel):
    """Optional YAML file listing cookies and proxies in addition to the env."""

    cookies: list[str] = Field(default_factory=list)
    proxies: list[str] = Field(default_factory=list)

    @field_validator("cookies", "proxies", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value if item is not None]


def load_pool_file(path: str | Path) -> PoolFile:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Expected YAML object in '{resolved}'.")
    return PoolFile.model_validate(payload)


def resolve_pool_sources(settings: Settings) -> tuple[list[str], list[str]]:
    """Cookies and proxy URLs from the env, followed by those from the pool file."""
    cookies = list(settings.cookies_list)
    proxies = list(settings.proxy_urls_list)
    if settings.pool_config_path:
        pool_file = load_pool_file(settings.pool_config_path)
        cookies.extend(pool_file.cookies)
        proxies.extend(pool_file.proxies)
    return cookies, proxies
