from __future__ import annotations

from typing import Any

from ai_proxy.adapters.base import ProviderAdapter, map_finish_reason, sse_data_payload
from ai_proxy.errors import ProxyErrorCode
from ai_proxy.models import (
    FinishReason,
    ProxyRequest,
    StreamChunk,
    UnifiedResponse,
    UpstreamRequest,
)

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}

_ERROR_TYPES: dict[str, ProxyErrorCode] = {
    "authentication_error": ProxyErrorCode.INVALID_API_KEY,
    "permission_error": ProxyErrorCode.INVALID_API_KEY,
    "rate_limit_error": ProxyErrorCode.RATE_LIMIT_EXCEEDED,
}


class AnthropicAdapter(ProviderAdapter):
    def build_request(self, request: ProxyRequest) -> UpstreamRequest:
        system, messages = self.split_system(request.messages)
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": message.role, "content": message.content} for message in messages
            ],
            # Messages API rejects requests without max_tokens.
            "max_tokens": self.resolve_max_tokens(request),
            "temperature": self.resolve_temperature(request),
        }
        if system:
            body["system"] = system
        if request.stream:
            body["stream"] = True
        return UpstreamRequest(
            url=f"{self.base_url()}/messages",
            headers=self.request_headers(request.api_key),
            body=body,
            params=self.config.auth_params(request.api_key),
        )

    def parse_response(self, payload: Any, request: ProxyRequest) -> UnifiedResponse:
        if not isinstance(payload, dict):
            raise self.malformed_response("response body is not a JSON object")
        if payload.get("type") == "error" or payload.get("error") is not None:
            raise self.translate_error(200, {}, payload, request.api_key)

        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise self.malformed_response("response has no content blocks")
        text = "".join(
            block["text"]
            for block in blocks
            if isinstance(block, dict)
            and block.get("type", "text") == "text"
            and isinstance(block.get("text"), str)
        )

        usage = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict):
            usage = self.build_usage(
                raw_usage.get("input_tokens"), raw_usage.get("output_tokens")
            )

        model = payload.get("model")
        return UnifiedResponse(
            content=text,
            provider=self.provider_id,
            model=model if isinstance(model, str) and model else request.model,
            usage=usage,
            finish_reason=map_finish_reason(payload.get("stop_reason"), _STOP_REASONS),
        )

    def parse_stream_chunk(
        self, line: str, api_key: str | None = None
    ) -> StreamChunk | None:
        # "event:" lines are redundant with the "type" field of the data line.
        payload = sse_data_payload(line)
        if payload is None:
            return None
        event = self.decode_stream_json(payload)
        if event is None:
            return None
        self.raise_for_stream_error(event, api_key)

        event_type = event.get("type")
        if event_type == "content_block_delta":
            delta = event.get("delta")
            if isinstance(delta, dict) and delta.get("type", "text_delta") == "text_delta":
                text = delta.get("text")
                if isinstance(text, str) and text:
                    return StreamChunk(delta=text)
            return None
        if event_type == "message_delta":
            delta = event.get("delta")
            if isinstance(delta, dict):
                finish_reason = map_finish_reason(delta.get("stop_reason"), _STOP_REASONS)
                if finish_reason is not None:
                    return StreamChunk(delta="", finish_reason=finish_reason)
            return None
        if event_type == "message_stop":
            return StreamChunk(delta="", done=True)
        return None

    def classify_error(self, payload: Any) -> ProxyErrorCode | None:
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        if isinstance(error, dict):
            return _ERROR_TYPES.get(str(error.get("type") or ""))
        return None
