from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from notion_relay.pool_config import load_pool_file, resolve_pool_sources
from notion_relay.settings import Settings, get_settings
from tests.yaml_test_utils import save_yaml_file


def test_settings_split_cookie_and_proxy_lists(monkeypatch: Any) -> None:
    monkeypatch.setenv("NOTION_COOKIE", " first | second ||")
    monkeypatch.setenv("PROXY_URLS", "http://p1:8080, socks5://p2:1080 ,")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.cookies_list == ["first", "second"]
    assert settings.proxy_urls_list == ["http://p1:8080", "socks5://p2:1080"]
    assert settings.port == 7860
    get_settings.cache_clear()


def test_pool_file_entries_follow_env_entries(tmp_path: Path) -> None:
    path = tmp_path / "pools.yaml"
    save_yaml_file(
        path,
        {"cookies": ["file-cookie", None], "proxies": "http://file-proxy:3128"},
    )
    settings = Settings(
        notion_cookie="env-cookie",
        proxy_urls="http://env-proxy:3128",
        pool_config_path=str(path),
    )

    cookies, proxies = resolve_pool_sources(settings)

    assert cookies == ["env-cookie", "file-cookie"]
    assert proxies == ["http://env-proxy:3128", "http://file-proxy:3128"]


def test_empty_pool_file_is_allowed(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    pool_file = load_pool_file(path)

    assert pool_file.cookies == []
    assert pool_file.proxies == []


def test_pool_file_must_be_a_mapping(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    save_yaml_file(path, ["not", "a", "mapping"])

    with pytest.raises(ValueError, match="Expected YAML object"):
        load_pool_file(path)
