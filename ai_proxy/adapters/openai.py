from __future__ import annotations

from typing import Any

from ai_proxy.adapters.base import (
    SSE_DONE,
    ProviderAdapter,
    map_finish_reason,
    sse_data_payload,
)
from ai_proxy.errors import ProxyErrorCode
from ai_proxy.models import (
    FinishReason,
    ProxyRequest,
    StreamChunk,
    UnifiedResponse,
    UpstreamRequest,
)

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "content_filter": "content_filter",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
}

_AUTH_ERROR_CODES = {"invalid_api_key", "invalid_authentication"}
_RATE_LIMIT_ERROR_CODES = {"rate_limit_exceeded", "insufficient_quota"}


class OpenAIAdapter(ProviderAdapter):
    """Chat-completions wire format, shared by OpenAI-compatible vendors."""

    def build_request(self, request: ProxyRequest) -> UpstreamRequest:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": message.role, "content": message.content}
                for message in request.messages
            ],
            "max_tokens": self.resolve_max_tokens(request),
            "temperature": self.resolve_temperature(request),
        }
        if request.stream:
            body["stream"] = True
        return UpstreamRequest(
            url=f"{self.base_url()}/chat/completions",
            headers=self.request_headers(request.api_key),
            body=body,
            params=self.config.auth_params(request.api_key),
        )

    def parse_response(self, payload: Any, request: ProxyRequest) -> UnifiedResponse:
        if isinstance(payload, dict) and payload.get("error") is not None:
            raise self.translate_error(200, {}, payload, request.api_key)
        if not isinstance(payload, dict):
            raise self.malformed_response("response body is not a JSON object")
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise self.malformed_response("response has no choices")

        first = choices[0]
        message = first.get("message")
        if not isinstance(message, dict):
            raise self.malformed_response("choice has no message")
        content = message.get("content")
        if content is not None and not isinstance(content, str):
            raise self.malformed_response("message content is not a string")

        usage = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict):
            usage = self.build_usage(
                raw_usage.get("prompt_tokens"),
                raw_usage.get("completion_tokens"),
                raw_usage.get("total_tokens"),
            )

        model = payload.get("model")
        return UnifiedResponse(
            content=content or "",
            provider=self.provider_id,
            model=model if isinstance(model, str) and model else request.model,
            usage=usage,
            finish_reason=map_finish_reason(first.get("finish_reason"), _FINISH_REASONS),
        )

    def parse_stream_chunk(
        self, line: str, api_key: str | None = None
    ) -> StreamChunk | None:
        payload = sse_data_payload(line)
        if payload is None:
            return None
        if payload == SSE_DONE:
            return StreamChunk(delta="", done=True)
        event = self.decode_stream_json(payload)
        if event is None:
            return None
        self.raise_for_stream_error(event, api_key)

        choices = event.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        choice = choices[0]
        delta = choice.get("delta")
        text = delta.get("content") if isinstance(delta, dict) else None
        finish_reason = map_finish_reason(choice.get("finish_reason"), _FINISH_REASONS)
        if not isinstance(text, str):
            text = ""
        if not text and finish_reason is None:
            return None
        return StreamChunk(delta=text, finish_reason=finish_reason)

    def classify_error(self, payload: Any) -> ProxyErrorCode | None:
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        if not isinstance(error, dict):
            return None
        code = error.get("code")
        error_type = error.get("type")
        if code in _AUTH_ERROR_CODES or error_type == "authentication_error":
            return ProxyErrorCode.INVALID_API_KEY
        if code in _RATE_LIMIT_ERROR_CODES or error_type == "rate_limit_error":
            return ProxyErrorCode.RATE_LIMIT_EXCEEDED
        return None
