from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any

from ai_proxy.envelope import (
    error_payload,
    error_response,
    log_error_safely,
    log_request_safely,
    log_unexpected_error,
    sse_event,
    success_payload,
)
from ai_proxy.errors import STATUS_BY_CODE, ProxyError, ProxyErrorCode, redact_secrets
from ai_proxy.models import TokenUsage, UnifiedResponse


def test_every_error_code_has_one_status() -> None:
    assert set(STATUS_BY_CODE) == set(ProxyErrorCode)
    assert STATUS_BY_CODE[ProxyErrorCode.INVALID_REQUEST] == 400
    assert STATUS_BY_CODE[ProxyErrorCode.INVALID_API_KEY] == 401
    assert STATUS_BY_CODE[ProxyErrorCode.RATE_LIMIT_EXCEEDED] == 429
    assert STATUS_BY_CODE[ProxyErrorCode.UNKNOWN_ERROR] == 500
    assert STATUS_BY_CODE[ProxyErrorCode.UPSTREAM_ERROR] == 502
    assert STATUS_BY_CODE[ProxyErrorCode.TRANSPORT_ERROR] == 504


def test_success_payload_adds_metadata() -> None:
    started = time.perf_counter() - 0.05
    response = UnifiedResponse(
        content="hello",
        provider="openai",
        model="gpt-4o",
        usage=TokenUsage(prompt_tokens=1, completion_tokens=2, total_tokens=3),
        finish_reason="stop",
    )

    payload = success_payload(response, started)

    assert payload["content"] == "hello"
    assert payload["usage"] == {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3}
    assert payload["finishReason"] == "stop"
    assert payload["metadata"]["duration"] >= 50
    timestamp = payload["metadata"]["timestamp"]
    assert timestamp.endswith("Z")
    assert datetime.fromisoformat(timestamp.replace("Z", "+00:00")).tzinfo is not None


def test_error_payload_includes_optional_fields_only_when_set() -> None:
    plain = ProxyError(ProxyErrorCode.INVALID_REQUEST, "Provider is required")
    assert error_payload(plain) == {"error": "Provider is required", "code": "INVALID_REQUEST"}

    rich = ProxyError(
        ProxyErrorCode.RATE_LIMIT_EXCEEDED,
        "OpenAI rate limit exceeded",
        provider="openai",
        provider_detail="slow down",
        retry_after=12.4,
    )
    assert error_payload(rich) == {
        "error": "OpenAI rate limit exceeded",
        "code": "RATE_LIMIT_EXCEEDED",
        "provider": "openai",
        "details": "slow down",
        "retryAfter": 12,
    }


def test_error_response_sets_status_and_retry_after_header() -> None:
    response = error_response(
        ProxyError(ProxyErrorCode.RATE_LIMIT_EXCEEDED, "slow", retry_after=0.2)
    )
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "1"
    assert json.loads(response.body)["code"] == "RATE_LIMIT_EXCEEDED"


def test_sse_event_framing() -> None:
    assert sse_event({"delta": "a", "done": False}) == b'data: {"delta": "a", "done": false}\n\n'
    assert sse_event({"error": "x", "code": "UPSTREAM_ERROR"}, event="error").startswith(
        b"event: error\ndata: "
    )


def test_redact_secrets_removes_literal_and_key_shaped_values() -> None:
    text = "key secret123 and sk-ant-api03-abcdefghijk and AIzaSyA1234567890abcdefghijklmnop"
    redacted = redact_secrets(text, ["secret123", None])

    assert "secret123" not in redacted
    assert "sk-ant-" not in redacted
    assert "AIza" not in redacted
    assert redacted.count("[redacted]") == 3


def test_safe_logging_never_emits_key_or_content(caplog: Any) -> None:
    events: list[dict[str, Any]] = []
    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        log_request_safely("openai", "gpt-4o", 2, request_id="r1", audit_hook=events.append)
        log_error_safely(
            ProxyError(
                ProxyErrorCode.INVALID_API_KEY,
                "Invalid API key for OpenAI",
                provider="openai",
                provider_detail=redact_secrets("Incorrect key: secret123", ["secret123"]),
            ),
            request_id="r1",
            audit_hook=events.append,
        )
        log_unexpected_error(
            RuntimeError("failed while using secret123"),
            secrets=["secret123"],
            request_id="r1",
            audit_hook=events.append,
        )

    assert "proxy_request request_id=r1 provider=openai model=gpt-4o messages=2" in caplog.text
    assert "proxy_error" in caplog.text
    assert "proxy_unexpected_error" in caplog.text
    assert "secret123" not in caplog.text
    assert "secret123" not in json.dumps(events)
    assert [event["event"] for event in events] == [
        "proxy_request",
        "proxy_error",
        "proxy_unexpected_error",
    ]


def test_failing_audit_hook_does_not_break_logging(caplog: Any) -> None:
    def broken(_: dict[str, Any]) -> None:
        raise OSError("disk full")

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        log_request_safely("openai", "gpt-4o", 1, audit_hook=broken)

    assert "audit_hook_failed error_type=OSError" in caplog.text
