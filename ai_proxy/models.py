from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal

MessageRole = Literal["system", "user", "assistant"]
FinishReason = Literal["stop", "length", "content_filter", "tool_calls", "error"]

MESSAGE_ROLES: tuple[str, ...] = ("system", "user", "assistant")


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: MessageRole
    content: str


@dataclass(slots=True, frozen=True)
class ProxyRequest:
    provider: str
    model: str
    messages: tuple[ChatMessage, ...]
    api_key: str = field(repr=False)
    max_tokens: int | None = None
    stream: bool = False
    temperature: float | None = None

    def with_stream(self, stream: bool) -> ProxyRequest:
        return replace(self, stream=stream)


@dataclass(slots=True, frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(slots=True)
class UnifiedResponse:
    content: str
    provider: str
    model: str
    usage: TokenUsage | None = None
    finish_reason: FinishReason | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
        }
        if self.usage is not None:
            payload["usage"] = self.usage.to_dict()
        if self.finish_reason is not None:
            payload["finishReason"] = self.finish_reason
        return payload


@dataclass(slots=True, frozen=True)
class StreamChunk:
    delta: str
    done: bool = False
    finish_reason: FinishReason | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"delta": self.delta, "done": self.done}
        if self.finish_reason is not None:
            payload["finishReason"] = self.finish_reason
        return payload


@dataclass(slots=True, frozen=True)
class UpstreamRequest:
    url: str
    headers: dict[str, str] = field(repr=False)
    body: dict[str, Any]
    params: dict[str, str] = field(default_factory=dict, repr=False)
