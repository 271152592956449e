from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from notion_relay.errors import UnsupportedModelError
from notion_relay.models import ChatMessage, ChatRequest

# Public model id -> upstream routing key.
MODEL_ROUTES: dict[str, str] = {
    "openai-gpt-4.1": "openai-gpt-4.1",
    "anthropic-opus-4": "anthropic-opus-4",
    "anthropic-sonnet-4": "anthropic-sonnet-4",
    "anthropic-sonnet-3.x-stable": "anthropic-sonnet-3.x-stable",
}

MODEL_OWNERS: dict[str, str] = {
    "openai-gpt-4.1": "openai",
    "anthropic-opus-4": "anthropic",
    "anthropic-sonnet-4": "anthropic",
    "anthropic-sonnet-3.x-stable": "anthropic",
}


def supported_models() -> list[str]:
    return list(MODEL_ROUTES)


@dataclass(frozen=True, slots=True)
class UpstreamRequestBody:
    trace_id: str
    model: str
    routing_key: str
    transcript: tuple[dict[str, Any], ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "traceId": self.trace_id,
            "transcript": [dict(step) for step in self.transcript],
            "createThread": False,
            "generateTitle": False,
            "saveAllThreadOperations": False,
        }


def build_upstream_request(chat_request: ChatRequest) -> UpstreamRequestBody:
    routing_key = MODEL_ROUTES.get(chat_request.model)
    if routing_key is None:
        raise UnsupportedModelError(chat_request.model, supported_models())

    transcript: list[dict[str, Any]] = [
        _step("config", {"type": "markdown-chat", "model": routing_key}),
    ]
    transcript.extend(_message_step(message) for message in chat_request.messages)
    return UpstreamRequestBody(
        trace_id=str(uuid4()),
        model=chat_request.model,
        routing_key=routing_key,
        transcript=tuple(transcript),
    )


def _message_step(message: ChatMessage) -> dict[str, Any]:
    text = message.text()
    if message.role in {"system", "developer"}:
        return _step("instructions", text)
    if message.role == "assistant":
        return _step("markdown-chat", text)
    # user and tool results are both plain user turns upstream
    return _step("user", [[text]])


def _step(step_type: str, value: Any) -> dict[str, Any]:
    return {"id": str(uuid4()), "type": step_type, "value": value}
