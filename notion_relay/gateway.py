from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol
from uuid import uuid4

import httpx

from notion_relay.errors import (
    NoCredentialAvailable,
    NoEgressAvailable,
    NotInitializedError,
    UpstreamRejected,
    UpstreamTransportFailure,
)
from notion_relay.models import AggregatedCompletion, ChatRequest
from notion_relay.pool_config import resolve_pool_sources
from notion_relay.pools import (
    Credential,
    CredentialPool,
    EgressPool,
    EgressRoute,
    Outcome,
    PoolPolicy,
    build_credentials,
    build_routes,
)
from notion_relay.request_translator import UpstreamRequestBody, build_upstream_request
from notion_relay.settings import Settings
from notion_relay.stream_translator import LineStream, StreamTranslator, TranslatorState
from notion_relay.upstream import (
    UpstreamClient,
    classify_request_error,
    classify_upstream_status,
    request_error_details,
)

logger = logging.getLogger("uvicorn.error")

EventHook = Callable[[str, dict[str, Any]], None]


class UpstreamResponse(LineStream, Protocol):
    status_code: int

    async def aread(self) -> bytes: ...


class UpstreamSender(Protocol):
    async def open_stream(
        self,
        body: UpstreamRequestBody,
        credential: Credential,
        route: EgressRoute,
        *,
        request_id: str | None = None,
    ) -> UpstreamResponse: ...

    async def verify(self, credential: Credential, route: EgressRoute) -> Outcome: ...

    async def aclose(self) -> None: ...


class Gateway:
    """Binds one credential and one egress route to each chat request.

    There is no retry across pairs: a request that cannot be served by the
    selected pair fails, and the outcome is fed back into both pools.
    """

    def __init__(
        self,
        *,
        credentials: CredentialPool,
        egress: EgressPool,
        upstream: UpstreamSender,
        stream_idle_timeout_seconds: float | None = None,
        stream_max_duration_seconds: float | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.credentials = credentials
        self.egress = egress
        self.upstream = upstream
        self._stream_idle_timeout = stream_idle_timeout_seconds
        self._stream_max_duration = stream_max_duration_seconds
        self._event_hook = event_hook

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        event_hook: EventHook | None = None,
    ) -> Gateway:
        cookies, proxy_urls = resolve_pool_sources(settings)
        credentials = CredentialPool(
            build_credentials(cookies),
            PoolPolicy(
                failure_threshold=settings.credential_failure_threshold,
                cooldown_seconds=settings.credential_cooldown_seconds,
            ),
            event_hook=event_hook,
        )
        egress = EgressPool(
            build_routes(proxy_urls),
            PoolPolicy(
                failure_threshold=settings.egress_failure_threshold,
                cooldown_seconds=settings.egress_cooldown_seconds,
            ),
            event_hook=event_hook,
        )
        upstream = UpstreamClient(
            url=settings.upstream_url,
            verify_url=settings.upstream_verify_url,
            cookie_name=settings.upstream_cookie_name,
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
            read_timeout_seconds=settings.upstream_read_timeout_seconds,
            transport=transport,
        )
        return cls(
            credentials=credentials,
            egress=egress,
            upstream=upstream,
            stream_idle_timeout_seconds=settings.stream_idle_timeout_seconds,
            stream_max_duration_seconds=settings.stream_max_duration_seconds,
            event_hook=event_hook,
        )

    @property
    def initialized(self) -> bool:
        return self.credentials.initialized

    async def init(self) -> None:
        await self.credentials.init(self._verify_credential)
        # verification borrows routes; start request traffic from the first one
        self.egress.init()
        logger.info(
            "gateway_initialized initialized=%s valid_cookies=%d total_cookies=%d "
            "valid_routes=%d total_routes=%d",
            self.initialized,
            self.credentials.valid_count(),
            len(self.credentials),
            self.egress.valid_count(),
            len(self.egress),
        )

    async def shutdown(self) -> None:
        self.credentials.shutdown()
        self.egress.shutdown()
        await self.upstream.aclose()
        logger.info("gateway_shutdown")

    async def _verify_credential(self, credential: Credential) -> Outcome:
        route = self.egress.select()
        if route is None:
            return Outcome.TRANSIENT_FAILURE
        return await self.upstream.verify(credential, route)

    async def handle(
        self,
        chat_request: ChatRequest,
        *,
        request_id: str | None = None,
    ) -> StreamTranslator | AggregatedCompletion:
        translator = await self.open(chat_request, request_id=request_id)
        if chat_request.stream:
            return translator
        try:
            return await translator.aggregate()
        finally:
            if translator.state not in {
                TranslatorState.COMPLETED,
                TranslatorState.FAILED,
                TranslatorState.CANCELLED,
            }:
                await translator.cancel()

    async def open(
        self,
        chat_request: ChatRequest,
        *,
        request_id: str | None = None,
    ) -> StreamTranslator:
        request_id = request_id or uuid4().hex
        if not self.initialized:
            raise NotInitializedError(
                "The relay did not initialize successfully. Check that NOTION_COOKIE is valid."
            )
        body = build_upstream_request(chat_request)

        credential = self.credentials.select()
        if credential is None:
            raise NoCredentialAvailable(
                "No valid cookie is available. Check your NOTION_COOKIE configuration."
            )
        route = self.egress.select()
        if route is None:
            raise NoEgressAvailable("No healthy egress route is available.")

        logger.info(
            "gateway_dispatch request_id=%s model=%s routing_key=%s stream=%s "
            "credential=%s route=%s messages=%d",
            request_id,
            chat_request.model,
            body.routing_key,
            chat_request.stream,
            credential.id,
            route.id,
            len(chat_request.messages),
        )

        try:
            response = await self.upstream.open_stream(
                body, credential, route, request_id=request_id
            )
        except httpx.RequestError as exc:
            details = request_error_details(exc)
            credential_outcome, route_outcome = classify_request_error(exc)
            self._report(credential.id, route.id, credential_outcome, route_outcome)
            logger.warning(
                "upstream_request_error request_id=%s credential=%s route=%s "
                "error_type=%s error=%s",
                request_id,
                credential.id,
                route.id,
                details["error_type"],
                details["error"],
            )
            self._emit(
                "upstream_request_error",
                request_id=request_id,
                credential=credential.id,
                route=route.id,
                **details,
            )
            raise UpstreamTransportFailure(
                f"Could not reach upstream ({details['error_type']}): {details['error']}"
            ) from exc

        if not 200 <= response.status_code < 300:
            detail = await _read_error_detail(response)
            credential_outcome, route_outcome = classify_upstream_status(
                response.status_code
            )
            self._report(credential.id, route.id, credential_outcome, route_outcome)
            logger.warning(
                "upstream_rejected request_id=%s credential=%s route=%s status=%d detail=%s",
                request_id,
                credential.id,
                route.id,
                response.status_code,
                detail,
            )
            self._emit(
                "upstream_rejected",
                request_id=request_id,
                credential=credential.id,
                route=route.id,
                status=response.status_code,
            )
            raise UpstreamRejected(response.status_code, detail)

        credential_id = credential.id
        route_id = route.id

        def report_stream_outcome(outcome: Outcome) -> None:
            self._report(credential_id, route_id, outcome, outcome)
            self._emit(
                "stream_finished",
                request_id=request_id,
                credential=credential_id,
                route=route_id,
                outcome=outcome.value,
            )

        return StreamTranslator(
            response,
            model=chat_request.model,
            completion_id=f"chatcmpl-{request_id}",
            credential_id=credential_id,
            route_id=route_id,
            on_outcome=report_stream_outcome,
            idle_timeout_seconds=self._stream_idle_timeout,
            max_duration_seconds=self._stream_max_duration,
        )

    def status(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "valid_cookies": self.credentials.valid_count(),
            "total_cookies": len(self.credentials),
            "valid_routes": self.egress.valid_count(),
            "total_routes": len(self.egress),
        }

    def _report(
        self,
        credential_id: str,
        route_id: str,
        credential_outcome: Outcome | None,
        route_outcome: Outcome | None,
    ) -> None:
        if credential_outcome is not None:
            self.credentials.report_outcome(credential_id, credential_outcome)
        if route_outcome is not None:
            self.egress.report_outcome(route_id, route_outcome)

    def _emit(self, event: str, **fields: Any) -> None:
        if self._event_hook is None:
            return
        try:
            self._event_hook(event, fields)
        except Exception as exc:
            logger.debug("gateway_event_hook_failed event=%s error=%s", event, exc)


async def _read_error_detail(response: UpstreamResponse) -> str:
    try:
        body = await response.aread()
    except httpx.HTTPError:
        return ""
    finally:
        await response.aclose()
    return body.decode("utf-8", errors="replace").strip()[:200]
