from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from notion_relay.pools.base import Outcome
from notion_relay.pools.credentials import Credential
from notion_relay.pools.egress import EgressRoute
from notion_relay.request_translator import UpstreamRequestBody

logger = logging.getLogger("uvicorn.error")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)


def request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
        "is_proxy_error": isinstance(exc, httpx.ProxyError),
    }
    try:
        details["request_url"] = str(exc.request.url)
    except RuntimeError:
        details["request_url"] = None
    return details


def classify_upstream_status(status_code: int) -> tuple[Outcome | None, Outcome | None]:
    """Map an upstream HTTP status to (credential outcome, route outcome).

    ``None`` means the status says nothing about that side's health.
    """
    if 200 <= status_code < 300:
        return Outcome.SUCCESS, Outcome.SUCCESS
    if status_code in {401, 403}:
        return Outcome.AUTH_FAILURE, Outcome.SUCCESS
    if status_code == 407:
        return None, Outcome.AUTH_FAILURE
    if status_code == 429 or status_code >= 500:
        return Outcome.TRANSIENT_FAILURE, Outcome.TRANSIENT_FAILURE
    return None, None


def classify_request_error(exc: httpx.RequestError) -> tuple[Outcome | None, Outcome]:
    if isinstance(exc, httpx.ProxyError):
        return None, Outcome.TRANSIENT_FAILURE
    return Outcome.TRANSIENT_FAILURE, Outcome.TRANSIENT_FAILURE


class UpstreamClient:
    """Sends upstream calls bound to one cookie and one egress route.

    Keeps one ``httpx.AsyncClient`` per route so connection pools never mix
    proxies.
    """

    def __init__(
        self,
        *,
        url: str,
        verify_url: str | None = None,
        cookie_name: str = "token_v2",
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 120.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.verify_url = verify_url
        self.cookie_name = cookie_name
        self._timeout = httpx.Timeout(
            timeout=None,
            connect=max(0.1, float(connect_timeout_seconds)),
            read=max(0.1, float(read_timeout_seconds)),
            write=max(0.1, float(connect_timeout_seconds)),
            pool=max(0.1, float(connect_timeout_seconds)),
        )
        self._user_agent = user_agent
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}

    def cookie_header(self, credential: Credential) -> str:
        if "=" in credential.secret:
            return credential.secret
        return f"{self.cookie_name}={credential.secret}"

    def _headers(self, credential: Credential) -> dict[str, str]:
        return {
            "cookie": self.cookie_header(credential),
            "user-agent": self._user_agent,
            "accept": "text/event-stream",
            "content-type": "application/json",
        }

    def client_for(self, route: EgressRoute) -> httpx.AsyncClient:
        client = self._clients.get(route.id)
        if client is not None:
            return client
        kwargs: dict[str, Any] = {
            "timeout": self._timeout,
            "limits": httpx.Limits(max_connections=128, max_keepalive_connections=32),
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif route.endpoint is not None:
            kwargs["proxy"] = route.endpoint
        client = httpx.AsyncClient(**kwargs)
        self._clients[route.id] = client
        return client

    async def open_stream(
        self,
        body: UpstreamRequestBody,
        credential: Credential,
        route: EgressRoute,
        *,
        request_id: str | None = None,
    ) -> httpx.Response:
        client = self.client_for(route)
        started = time.perf_counter()
        request = client.build_request(
            method="POST",
            url=self.url,
            json=body.to_payload(),
            headers=self._headers(credential),
        )
        response = await client.send(request, stream=True)
        logger.info(
            "upstream_connected request_id=%s credential=%s route=%s status=%d connect_ms=%.2f",
            request_id,
            credential.id,
            route.id,
            response.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        return response

    async def verify(self, credential: Credential, route: EgressRoute) -> Outcome:
        if not self.verify_url:
            return Outcome.SUCCESS
        client = self.client_for(route)
        try:
            response = await client.post(
                self.verify_url,
                json={},
                headers=self._headers(credential) | {"accept": "application/json"},
            )
        except httpx.RequestError as exc:
            details = request_error_details(exc)
            logger.warning(
                "credential_verify_error credential=%s route=%s error_type=%s error=%s",
                credential.id,
                route.id,
                details["error_type"],
                details["error"],
            )
            return Outcome.TRANSIENT_FAILURE
        credential_outcome, _ = classify_upstream_status(response.status_code)
        logger.info(
            "credential_verified credential=%s route=%s status=%d",
            credential.id,
            route.id,
            response.status_code,
        )
        return credential_outcome or Outcome.TRANSIENT_FAILURE

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
