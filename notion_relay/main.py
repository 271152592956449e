from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from notion_relay.audit import JsonlAuditLogger
from notion_relay.auth import Authenticator
from notion_relay.errors import RelayError, RequestValidationError, UpstreamTransportFailure
from notion_relay.gateway import Gateway
from notion_relay.models import AggregatedCompletion, ChatRequest
from notion_relay.request_translator import MODEL_OWNERS, supported_models
from notion_relay.settings import get_settings
from notion_relay.stream_translator import (
    DEFAULT_FINISH_REASON,
    StreamTranslator,
    TranslatorState,
)

app = FastAPI(
    title="Notion Relay",
    description="OpenAI-compatible chat completions relayed through a pool of Notion sessions.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

_MODELS_CREATED = 1735689600


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = request.headers.get("x-request-id") or uuid4().hex
    request.state.request_id = request_id

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None and authenticator.protects(request.url.path):
        auth_error = authenticator.authenticate_request(request)
        if auth_error is not None:
            auth_error.headers["x-request-id"] = request_id
            return auth_error

    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    logger.setLevel(settings.log_level.upper())
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    audit_logger = JsonlAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
    )
    app.state.audit_logger = audit_logger
    transport = getattr(app.state, "upstream_transport", None)
    gateway = Gateway.from_settings(
        settings,
        transport=transport,
        event_hook=audit_logger.record,
    )
    await gateway.init()
    app.state.gateway = gateway

    if gateway.initialized:
        logger.info(
            "startup complete port=%d initialized=true valid_cookies=%d",
            settings.port,
            gateway.credentials.valid_count(),
        )
    else:
        logger.warning(
            "startup complete port=%d initialized=false "
            "reason=no_valid_cookie hint=check_NOTION_COOKIE",
            settings.port,
        )


@app.on_event("shutdown")
async def shutdown() -> None:
    gateway: Gateway | None = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.shutdown()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _build_models_response() -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": _MODELS_CREATED,
                "owned_by": MODEL_OWNERS.get(model_id, "notion"),
            }
            for model_id in supported_models()
        ],
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    gateway: Gateway | None = getattr(app.state, "gateway", None)
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "initialized": bool(gateway and gateway.initialized),
        "valid_cookies": gateway.credentials.valid_count() if gateway else 0,
    }


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    return _build_models_response()


@app.get("/cookies/status")
async def cookies_status() -> dict[str, Any]:
    gateway: Gateway = app.state.gateway
    return {
        "total_cookies": gateway.credentials.valid_count(),
        "cookies": gateway.credentials.status_snapshot(),
    }


@app.get("/proxies/status")
async def proxies_status() -> dict[str, Any]:
    gateway: Gateway = app.state.gateway
    return {
        "total_proxies": len(gateway.egress),
        "valid_proxies": gateway.egress.valid_count(),
        "proxies": gateway.egress.status_snapshot(),
    }


def parse_chat_request(payload: Any) -> ChatRequest:
    if not isinstance(payload, dict):
        raise RequestValidationError("Invalid request: body must be a JSON object.")
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise RequestValidationError(
            "Invalid request: 'messages' field must be a non-empty array."
        )
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise RequestValidationError(
            f"Invalid request: {location or 'body'}: {first.get('msg')}"
        ) from exc


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    request_id: str = request.state.request_id
    try:
        payload = await request.json()
    except ValueError as exc:
        raise RequestValidationError("Invalid request: body is not valid JSON.") from exc
    chat_request = parse_chat_request(payload)
    logger.info(
        "chat_request request_id=%s model=%s stream=%s messages=%d",
        request_id,
        chat_request.model,
        chat_request.stream,
        len(chat_request.messages),
    )

    gateway: Gateway = app.state.gateway
    started = time.perf_counter()
    result = await gateway.handle(chat_request, request_id=request_id)
    if isinstance(result, AggregatedCompletion):
        logger.info(
            "chat_response request_id=%s stream=false chars=%d finish_reason=%s latency_ms=%.2f",
            request_id,
            len(result.content),
            result.finish_reason,
            (time.perf_counter() - started) * 1000.0,
        )
        return JSONResponse(content=result.to_openai())

    return StreamingResponse(
        content=encode_sse_stream(result, request_id=request_id),
        media_type="text/event-stream",
        headers={"cache-control": "no-cache", "connection": "keep-alive"},
        background=BackgroundTask(result.cancel),
    )


def _sse_frame(payload: dict[str, Any] | str) -> bytes:
    if isinstance(payload, str):
        return f"data: {payload}\n\n".encode("utf-8")
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode("utf-8")


async def encode_sse_stream(
    translator: StreamTranslator, *, request_id: str
) -> AsyncIterator[bytes]:
    """Frames translator chunks as SSE.

    A closing chunk is added when the upstream never sent a finish reason.
    Closing frames are only sent for a completed stream; a translator
    cancelled elsewhere ends the body without them.
    A mid-stream failure is reported as an error frame and ``[DONE]`` is
    withheld so clients can tell the response is incomplete.
    """
    try:
        async for chunk in translator:
            yield _sse_frame(chunk.to_openai())
        if translator.state != TranslatorState.COMPLETED:
            return
        if translator.finish_reason is None:
            yield _sse_frame(
                {
                    "id": translator.completion_id,
                    "object": "chat.completion.chunk",
                    "created": translator.created,
                    "model": translator.model,
                    "choices": [
                        {
                            "index": 0,
                            "delta": {},
                            "finish_reason": DEFAULT_FINISH_REASON,
                        }
                    ],
                }
            )
        yield _sse_frame("[DONE]")
    except UpstreamTransportFailure as exc:
        logger.warning(
            "chat_stream_aborted request_id=%s error=%s", request_id, exc.message
        )
        yield _sse_frame(exc.to_response_body())
    finally:
        await translator.cancel()


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    logger.warning(
        "request_failed request_id=%s path=%s status=%d type=%s message=%s",
        getattr(request.state, "request_id", None),
        request.url.path,
        exc.status_code,
        exc.error_type,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response_body())


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "notion_relay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run()
