from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from notion_relay.pools.base import PoolEntry, PoolPolicy, RotatingPool

DIRECT_ROUTE_ID = "direct"


@dataclass(slots=True)
class EgressRoute(PoolEntry):
    endpoint: str | None = None

    @property
    def is_direct(self) -> bool:
        return self.endpoint is None

    @property
    def display_endpoint(self) -> str:
        if self.endpoint is None:
            return DIRECT_ROUTE_ID
        return _mask_userinfo(self.endpoint)


def build_routes(proxy_urls: Iterable[str]) -> list[EgressRoute]:
    """Routes for the configured proxies, or a single direct route when none are set."""
    routes: list[EgressRoute] = []
    seen: set[str] = set()
    for raw in proxy_urls:
        url = raw.strip()
        if not url or url in seen:
            continue
        seen.add(url)
        routes.append(EgressRoute(id=f"proxy-{len(routes) + 1}", endpoint=url))
    if not routes:
        routes.append(EgressRoute(id=DIRECT_ROUTE_ID, endpoint=None))
    return routes


def _mask_userinfo(url: str) -> str:
    parts = urlsplit(url)
    if not parts.username and not parts.password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


class EgressPool(RotatingPool[EgressRoute]):
    kind = "egress"

    def __init__(
        self,
        routes: Iterable[EgressRoute],
        policy: PoolPolicy | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            routes,
            policy or PoolPolicy(failure_threshold=3, cooldown_seconds=60.0),
            **kwargs,
        )

    def init(self) -> None:
        self.reset_cursor()

    def shutdown(self) -> None:
        self.reset_cursor()

    def _describe(self, entry: EgressRoute) -> dict[str, Any]:
        description = super()._describe(entry)
        description["endpoint"] = entry.display_endpoint
        return description
