from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

MessageRole = Literal["system", "developer", "user", "assistant", "tool"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    role: MessageRole
    content: str | list[Any] | None = None

    def text(self) -> str:
        return _extract_text_content(self.content)


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    model: str
    messages: list[ChatMessage] = Field(min_length=1)
    stream: bool = False

    @field_validator("model")
    @classmethod
    def _strip_model(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("model must be a non-empty string")
        return normalized


def _extract_text_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
            continue
        if not isinstance(item, dict):
            continue
        if item.get("type") in {"text", "input_text", "output_text"}:
            text = item.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "".join(parts)


class UpstreamDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str | None = None
    content: str | None = None


class UpstreamChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    delta: UpstreamDelta | None = None
    finish_reason: str | None = None


class UpstreamEvent(BaseModel):
    """One decoded `data:` payload. Everything is optional; unknown keys are dropped."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    created: int | None = None
    choices: list[UpstreamChoice] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ChatChunk:
    id: str
    created: int
    model: str
    index: int
    delta_content: str | None
    finish_reason: str | None

    def to_openai(self) -> dict[str, Any]:
        delta: dict[str, Any] = {}
        if self.delta_content is not None:
            delta["content"] = self.delta_content
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": self.index,
                    "delta": delta,
                    "finish_reason": self.finish_reason,
                }
            ],
        }


@dataclass(frozen=True, slots=True)
class AggregatedCompletion:
    id: str
    created: int
    model: str
    content: str
    finish_reason: str

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": self.content},
                    "finish_reason": self.finish_reason,
                }
            ],
            "usage": {
                "prompt_tokens": None,
                "completion_tokens": None,
                "total_tokens": None,
            },
        }
