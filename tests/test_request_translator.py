from __future__ import annotations

import pytest

from notion_relay.errors import UnsupportedModelError
from notion_relay.models import ChatRequest
from notion_relay.request_translator import build_upstream_request, supported_models


def _request(model: str = "anthropic-sonnet-4", **overrides: object) -> ChatRequest:
    payload: dict[str, object] = {
        "model": model,
        "messages": [
            {"role": "system", "content": "Be terse."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello."},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What is "},
                    {"type": "image_url", "image_url": {"url": "http://x"}},
                    {"type": "text", "text": "2+2?"},
                ],
            },
        ],
    }
    payload.update(overrides)
    return ChatRequest.model_validate(payload)


def test_supported_models_lists_all_public_ids() -> None:
    assert supported_models() == [
        "openai-gpt-4.1",
        "anthropic-opus-4",
        "anthropic-sonnet-4",
        "anthropic-sonnet-3.x-stable",
    ]


def test_build_upstream_request_routes_model_and_encodes_history() -> None:
    body = build_upstream_request(_request())

    assert body.model == "anthropic-sonnet-4"
    assert body.routing_key == "anthropic-sonnet-4"
    steps = [(step["type"], step["value"]) for step in body.transcript]
    assert steps == [
        ("config", {"type": "markdown-chat", "model": "anthropic-sonnet-4"}),
        ("instructions", "Be terse."),
        ("user", [["Hi"]]),
        ("markdown-chat", "Hello."),
        ("user", [["What is 2+2?"]]),
    ]


def test_payload_is_rebuilt_on_every_call() -> None:
    body = build_upstream_request(_request())

    first = body.to_payload()
    first["transcript"].clear()

    assert len(body.to_payload()["transcript"]) == 5
    assert body.to_payload()["traceId"] == body.trace_id


def test_unknown_model_is_rejected() -> None:
    with pytest.raises(UnsupportedModelError) as exc_info:
        build_upstream_request(_request(model="gpt-5"))

    assert exc_info.value.requested_model == "gpt-5"
    assert exc_info.value.status_code == 400
    assert "anthropic-opus-4" in exc_info.value.message


def test_chat_request_requires_messages() -> None:
    with pytest.raises(ValueError):
        ChatRequest.model_validate({"model": "anthropic-opus-4", "messages": []})


def test_chat_request_defaults_stream_to_false_and_ignores_extra_fields() -> None:
    request = ChatRequest.model_validate(
        {
            "model": " openai-gpt-4.1 ",
            "messages": [{"role": "user", "content": None}],
            "temperature": 0.2,
        }
    )

    assert request.stream is False
    assert request.model == "openai-gpt-4.1"
    assert request.messages[0].text() == ""
