from __future__ import annotations

from typing import Any

import httpx
from fastapi.testclient import TestClient

from notion_relay.main import app
from notion_relay.settings import get_settings

TEST_TOKEN = "relay-test-token"


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("PROXY_AUTH_TOKEN", TEST_TOKEN)
    monkeypatch.setenv("NOTION_COOKIE", "cookie-value-one-abcdef|cookie-value-two-abcdef")
    monkeypatch.setenv("PROXY_URLS", "")
    monkeypatch.setenv("UPSTREAM_URL", "http://upstream.example/api/v3/run")
    monkeypatch.delenv("UPSTREAM_VERIFY_URL", raising=False)
    monkeypatch.delenv("POOL_CONFIG_PATH", raising=False)
    monkeypatch.setenv("AUDIT_LOG_ENABLED", "false")


def build_test_client(
    monkeypatch: Any,
    handler: Any = None,
    **env: Any,
) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    app.state.upstream_transport = (
        httpx.MockTransport(handler) if handler is not None else None
    )
    return TestClient(app)


def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_TOKEN}"}
