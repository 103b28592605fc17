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

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}

_AUTH_REASONS = {"API_KEY_INVALID", "API_KEY_SERVICE_BLOCKED"}
_AUTH_STATUSES = {"UNAUTHENTICATED", "PERMISSION_DENIED"}


def _candidate_text(candidate: dict[str, Any]) -> str:
    content = candidate.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    return "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )


class GoogleAdapter(ProviderAdapter):
    """Gemini generateContent API; the key travels as a query parameter."""

    def _model_path(self, model: str) -> str:
        return model.removeprefix("models/")

    def build_request(self, request: ProxyRequest) -> UpstreamRequest:
        system, messages = self.split_system(request.messages)
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if message.role == "assistant" else "user",
                    "parts": [{"text": message.content}],
                }
                for message in messages
            ],
            "generationConfig": {
                "maxOutputTokens": self.resolve_max_tokens(request),
                "temperature": self.resolve_temperature(request),
            },
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        params: dict[str, str] = {}
        if request.stream:
            action = "streamGenerateContent"
            params["alt"] = "sse"
        else:
            action = "generateContent"
        params.update(self.config.auth_params(request.api_key))

        return UpstreamRequest(
            url=f"{self.base_url()}/models/{self._model_path(request.model)}:{action}",
            headers=self.request_headers(request.api_key),
            body=body,
            params=params,
        )

    def parse_response(self, payload: Any, request: ProxyRequest) -> UnifiedResponse:
        if not isinstance(payload, dict):
            raise self.malformed_response("response body is not a JSON object")
        if payload.get("error") is not None:
            raise self.translate_error(200, {}, payload, request.api_key)

        usage = None
        raw_usage = payload.get("usageMetadata")
        if isinstance(raw_usage, dict):
            usage = self.build_usage(
                raw_usage.get("promptTokenCount"),
                raw_usage.get("candidatesTokenCount"),
                raw_usage.get("totalTokenCount"),
            )
        model = payload.get("modelVersion")
        model = model if isinstance(model, str) and model else request.model

        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            feedback = payload.get("promptFeedback")
            if isinstance(feedback, dict) and feedback.get("blockReason"):
                return UnifiedResponse(
                    content="",
                    provider=self.provider_id,
                    model=model,
                    usage=usage,
                    finish_reason="content_filter",
                )
            raise self.malformed_response("response has no candidates")
        first = candidates[0]
        if not isinstance(first, dict):
            raise self.malformed_response("candidate is not an object")

        return UnifiedResponse(
            content=_candidate_text(first),
            provider=self.provider_id,
            model=model,
            usage=usage,
            finish_reason=map_finish_reason(first.get("finishReason"), _FINISH_REASONS),
        )

    def parse_stream_chunk(
        self, line: str, api_key: str | None = None
    ) -> StreamChunk | None:
        payload = sse_data_payload(line)
        if payload is None:
            return None
        event = self.decode_stream_json(payload)
        if event is None:
            return None
        self.raise_for_stream_error(event, api_key)

        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return None
        candidate = candidates[0]
        text = _candidate_text(candidate)
        raw_reason = candidate.get("finishReason")
        # Gemini has no separate terminal event; the chunk carrying a
        # finishReason is the last one.
        if isinstance(raw_reason, str) and raw_reason:
            return StreamChunk(
                delta=text,
                done=True,
                finish_reason=map_finish_reason(raw_reason, _FINISH_REASONS),
            )
        if not text:
            return None
        return StreamChunk(delta=text)

    def classify_error(self, payload: Any) -> ProxyErrorCode | None:
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        if not isinstance(error, dict):
            return None
        details = error.get("details")
        if isinstance(details, list):
            for item in details:
                if isinstance(item, dict) and item.get("reason") in _AUTH_REASONS:
                    return ProxyErrorCode.INVALID_API_KEY
        status = error.get("status")
        if status in _AUTH_STATUSES:
            return ProxyErrorCode.INVALID_API_KEY
        if status == "RESOURCE_EXHAUSTED":
            return ProxyErrorCode.RATE_LIMIT_EXCEEDED
        return None
