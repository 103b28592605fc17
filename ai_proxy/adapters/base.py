from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from ai_proxy.catalogs import ProviderConfig
from ai_proxy.errors import ProxyError, ProxyErrorCode, redact_secrets
from ai_proxy.models import (
    ChatMessage,
    FinishReason,
    ProxyRequest,
    StreamChunk,
    TokenUsage,
    UnifiedResponse,
    UpstreamRequest,
)

SSE_DONE = "[DONE]"
MAX_DETAIL_CHARS = 500


def sse_data_payload(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None for any other line."""
    if not line or not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    return payload or None


def parse_retry_after_seconds(
    headers: Mapping[str, str], default_seconds: float | None = None
) -> float | None:
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if not raw:
        return default_seconds

    value = raw.strip()
    if not value:
        return default_seconds

    try:
        seconds = float(value)
        if seconds > 0:
            return seconds
    except (TypeError, ValueError):
        pass

    try:
        retry_dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default_seconds
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
    if delta > 0:
        return float(delta)
    return default_seconds


def decode_error_body(body: Any) -> tuple[Any, str]:
    """Best-effort decode of a vendor error body into (json, text)."""
    if isinstance(body, (dict, list)):
        return body, json.dumps(body, ensure_ascii=False)
    if isinstance(body, (bytes, bytearray)):
        text = bytes(body).decode("utf-8", errors="replace")
    elif body is None:
        text = ""
    else:
        text = str(body)
    try:
        return json.loads(text), text
    except ValueError:
        return None, text


def as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


class ProviderAdapter(ABC):
    """Translates between the unified request shape and one vendor wire format.

    Adapters are stateless apart from their provider config, so one instance
    is shared by every request for that provider.
    """

    def __init__(self, config: ProviderConfig):
        self.config = config

    @property
    def provider_id(self) -> str:
        return self.config.id

    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def request_headers(self, api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.config.extra_headers)
        headers.update(self.config.auth_headers(api_key))
        return headers

    def resolve_max_tokens(self, request: ProxyRequest) -> int:
        if request.max_tokens is not None:
            return request.max_tokens
        return self.config.default_max_tokens

    def resolve_temperature(self, request: ProxyRequest) -> float:
        if request.temperature is not None:
            return request.temperature
        return self.config.default_temperature

    @abstractmethod
    def build_request(self, request: ProxyRequest) -> UpstreamRequest:
        """Build the vendor call for a buffered or streaming completion."""

    @abstractmethod
    def parse_response(
        self, payload: Any, request: ProxyRequest
    ) -> UnifiedResponse:
        """Convert a decoded 2xx body into a UnifiedResponse."""

    @abstractmethod
    def parse_stream_chunk(
        self, line: str, api_key: str | None = None
    ) -> StreamChunk | None:
        """Parse one upstream line.

        Returns None for lines that carry no text (comments, event names,
        keep-alives). Raises ProxyError when the vendor reports an error event,
        with its detail redacted against api_key.
        """

    def error_message(self, payload: Any) -> str | None:
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
        return None

    def classify_error(self, payload: Any) -> ProxyErrorCode | None:
        """Vendor-specific envelope classification; None defers to the HTTP status."""
        return None

    def translate_error(
        self,
        status_code: int,
        headers: Mapping[str, str],
        body: Any,
        api_key: str | None = None,
    ) -> ProxyError:
        payload, text = decode_error_body(body)
        code = self.classify_error(payload)
        if code is None:
            if status_code in {401, 403}:
                code = ProxyErrorCode.INVALID_API_KEY
            elif status_code == 429:
                code = ProxyErrorCode.RATE_LIMIT_EXCEEDED
            else:
                code = ProxyErrorCode.UPSTREAM_ERROR

        detail = self.error_message(payload) or text.strip()
        detail = redact_secrets(detail, (api_key,))[:MAX_DETAIL_CHARS] or None

        name = self.config.display_name
        retry_after: float | None = None
        if code == ProxyErrorCode.INVALID_API_KEY:
            message = f"Invalid API key for {name}"
        elif code == ProxyErrorCode.RATE_LIMIT_EXCEEDED:
            retry_after = parse_retry_after_seconds(headers)
            message = f"{name} rate limit exceeded"
        elif status_code >= 400:
            message = f"{name} API error ({status_code})"
        else:
            message = f"{name} returned an error"

        return ProxyError(
            code,
            message,
            provider=self.provider_id,
            provider_detail=detail,
            retry_after=retry_after,
        )

    def malformed_response(self, what: str) -> ProxyError:
        return ProxyError(
            ProxyErrorCode.UPSTREAM_ERROR,
            f"Malformed response from {self.config.display_name}",
            provider=self.provider_id,
            provider_detail=what,
        )

    def decode_stream_json(self, payload: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(payload)
        except ValueError:
            return None
        if isinstance(parsed, dict):
            return parsed
        return None

    def raise_for_stream_error(
        self, event: dict[str, Any], api_key: str | None = None
    ) -> None:
        if event.get("error") is None and event.get("type") != "error":
            return
        raise self.translate_error(200, {}, event, api_key)

    @staticmethod
    def split_system(
        messages: tuple[ChatMessage, ...],
    ) -> tuple[str | None, list[ChatMessage]]:
        system_parts = [m.content for m in messages if m.role == "system"]
        rest = [m for m in messages if m.role != "system"]
        system = "\n\n".join(system_parts) if system_parts else None
        return system, rest

    @staticmethod
    def build_usage(prompt: Any, completion: Any, total: Any = None) -> TokenUsage:
        prompt_tokens = as_int(prompt)
        completion_tokens = as_int(completion)
        total_tokens = as_int(total) or prompt_tokens + completion_tokens
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        )


def map_finish_reason(
    raw: Any, mapping: Mapping[str, FinishReason]
) -> FinishReason | None:
    if not isinstance(raw, str) or not raw:
        return None
    return mapping.get(raw)
