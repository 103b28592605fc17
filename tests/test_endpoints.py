from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from tests.client_test_utils import (
    GOOGLE_TEST_KEY,
    build_test_client,
    chat_body,
    install_upstream,
)


class _Upstream:
    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


def _sse_events(text: str) -> list[tuple[str | None, dict[str, Any]]]:
    events = []
    for block in text.strip().split("\n\n"):
        event_name = None
        data: dict[str, Any] | None = None
        for line in block.splitlines():
            if line.startswith("event: "):
                event_name = line[len("event: ") :]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: ") :])
        if data is not None:
            events.append((event_name, data))
    return events


def test_scenario_a_proxy_returns_unified_response(monkeypatch: Any) -> None:
    upstream = _Upstream(
        httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})
    )
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        response = client.post("/proxy", json=chat_body())

    assert response.status_code == 200
    body = response.json()
    assert body["content"] == "hello"
    assert body["provider"] == "openai"
    assert body["model"] == "gpt-x"
    assert isinstance(body["metadata"]["duration"], int)
    assert body["metadata"]["timestamp"].endswith("Z")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert len(upstream.requests) == 1


def test_scenario_b_validate_rejects_bad_format_without_network(monkeypatch: Any) -> None:
    upstream = _Upstream(httpx.Response(200, json={}))
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        response = client.post(
            "/validate", json={"provider": "anthropic", "apiKey": "bad-format"}
        )

    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is False
    assert body["error"] == "Invalid API key format"
    assert upstream.requests == []


def test_scenario_c_stream_relays_three_chunks_in_order(monkeypatch: Any) -> None:
    body = b"".join(
        f'data: {{"choices":[{{"delta":{{"content":"{text}"}}}}]}}\n\n'.encode()
        for text in ("one", "two", "three")
    )
    upstream = _Upstream(httpx.Response(200, content=body))
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        started = time.perf_counter()
        response = client.post("/stream", json=chat_body())
        elapsed = time.perf_counter() - started

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-content-type-options"] == "nosniff"
    assert _sse_events(response.text) == [
        (None, {"delta": "one", "done": False}),
        (None, {"delta": "two", "done": False}),
        (None, {"delta": "three", "done": False}),
    ]
    assert json.loads(upstream.requests[0].content)["stream"] is True
    assert elapsed < 5.0


def test_stream_upstream_rejection_is_json_error(monkeypatch: Any) -> None:
    upstream = _Upstream(httpx.Response(401, json={"error": {"message": "bad key"}}))
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        response = client.post("/stream", json=chat_body())

    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/json")
    assert response.json()["code"] == "INVALID_API_KEY"


def test_proxy_rejects_bad_key_format_before_network(monkeypatch: Any) -> None:
    upstream = _Upstream(httpx.Response(200, json={}))
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        response = client.post("/proxy", json=chat_body(apiKey="not-a-key"))

    assert response.status_code == 401
    assert response.json() == {
        "error": "Invalid API key format for openai",
        "code": "INVALID_API_KEY",
        "provider": "openai",
    }
    assert upstream.requests == []


def test_proxy_unknown_provider_is_400(monkeypatch: Any) -> None:
    upstream = _Upstream(httpx.Response(200, json={}))
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        response = client.post("/proxy", json=chat_body(provider="cohere"))

    assert response.status_code == 400
    assert response.json()["code"] == "UNKNOWN_PROVIDER"
    assert response.json()["error"].startswith("Unsupported provider: cohere.")
    assert upstream.requests == []


def test_proxy_invalid_json_is_400(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/proxy", content=b"{not json", headers={"Content-Type": "application/json"}
        )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"


def test_proxy_empty_body_is_400(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/proxy", content=b"", headers={"Content-Type": "application/json"}
        )

    assert response.status_code == 400
    assert response.json()["error"] == "Request body is required"


def test_proxy_rejects_wrong_method_and_content_type(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        get_response = client.get("/proxy")
        text_response = client.post(
            "/proxy", content=b"hello", headers={"Content-Type": "text/plain"}
        )

    assert get_response.status_code == 405
    assert get_response.json()["code"] == "METHOD_NOT_ALLOWED"
    assert get_response.headers["X-Frame-Options"] == "DENY"
    assert text_response.status_code == 415


def test_proxy_rejects_oversized_body(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, MAX_REQUEST_BYTES="200") as client:
        response = client.post("/proxy", json=chat_body(padding="x" * 500))

    assert response.status_code == 413
    assert response.json()["code"] == "PAYLOAD_TOO_LARGE"


def test_proxy_rate_limit_returns_429_with_retry_after(monkeypatch: Any) -> None:
    upstream = _Upstream(
        httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})
    )
    with build_test_client(monkeypatch, RATE_LIMIT_RULES="2/60") as client:
        install_upstream(upstream)
        statuses = [client.post("/proxy", json=chat_body()).status_code for _ in range(2)]
        limited = client.post("/proxy", json=chat_body())

    assert statuses == [200, 200]
    assert limited.status_code == 429
    assert limited.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(limited.headers["Retry-After"]) >= 1
    assert len(upstream.requests) == 2


def test_proxy_origin_allow_list(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, ALLOWED_ORIGINS="https://app.example.com") as client:
        response = client.post(
            "/proxy", json=chat_body(), headers={"Origin": "https://evil.example.com"}
        )

    assert response.status_code == 403
    assert response.json() == {"error": "Origin not allowed", "code": "FORBIDDEN"}


def test_vendor_rate_limit_is_passed_through(monkeypatch: Any) -> None:
    upstream = _Upstream(
        httpx.Response(
            429, headers={"retry-after": "7"}, json={"error": {"message": "Too many"}}
        )
    )
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        response = client.post("/proxy", json=chat_body())

    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["provider"] == "openai"
    assert body["retryAfter"] == 7
    assert response.headers["Retry-After"] == "7"


def test_unexpected_exception_is_500_and_redacted(monkeypatch: Any, caplog: Any) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        raise RuntimeError("exploded holding sk-test")

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
            response = client.post("/proxy", json=chat_body())

    assert response.status_code == 500
    assert response.json() == {"error": "An unexpected error occurred", "code": "UNKNOWN_ERROR"}
    assert "proxy_unexpected_error" in caplog.text
    assert "sk-test" not in caplog.text


def test_validate_reports_vendor_rejection_and_rate_limit(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        install_upstream(
            _Upstream(httpx.Response(401, json={"error": {"message": "bad"}}))
        )
        rejected = client.post("/validate", json={"provider": "openai", "apiKey": "sk-test"})
        install_upstream(
            _Upstream(httpx.Response(429, json={"error": {"message": "slow"}}))
        )
        limited = client.post("/validate", json={"provider": "openai", "apiKey": "sk-test"})

    assert rejected.json() == {
        "valid": False,
        "provider": "openai",
        "model": "gpt-4o-mini",
        "error": "Invalid API key",
    }
    assert limited.json()["valid"] is True
    assert limited.json()["error"] == (
        "Rate limit exceeded - key appears valid but is rate limited"
    )


def test_validate_accepts_live_google_key(monkeypatch: Any) -> None:
    upstream = _Upstream(
        httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "Hi"}]}}]})
    )
    with build_test_client(monkeypatch, VALIDATION_MAX_TOKENS="3") as client:
        install_upstream(upstream)
        response = client.post(
            "/validate", json={"provider": "google", "apiKey": GOOGLE_TEST_KEY}
        )

    assert response.json() == {"valid": True, "provider": "google", "model": "gemini-1.5-flash"}
    sent = upstream.requests[0]
    assert sent.url.params["key"] == GOOGLE_TEST_KEY
    assert json.loads(sent.content)["generationConfig"]["maxOutputTokens"] == 3


def test_validate_requires_provider_and_key(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post("/validate", json={"provider": "openai"})

    assert response.status_code == 400
    assert response.json()["error"] == "Provider and apiKey are required"


def test_preflight_returns_204_with_cors(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        responses = [client.options(path) for path in ("/proxy", "/stream", "/validate")]

    for response in responses:
        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"
        assert response.headers["Access-Control-Max-Age"] == "86400"


def test_health_and_providers(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        health = client.get("/health")
        providers = client.get("/providers")

    assert health.json() == {"status": "ok"}
    items = providers.json()["providers"]
    assert [item["id"] for item in items][:3] == ["openai", "anthropic", "google"]
    openai = items[0]
    assert openai["defaultModel"] == "gpt-4o-mini"
    assert "gpt-4o" in openai["models"]
    assert "key_format_pattern" not in json.dumps(items)


def test_request_logs_never_contain_api_key(monkeypatch: Any, caplog: Any) -> None:
    upstream = _Upstream(
        httpx.Response(401, json={"error": {"message": "Incorrect API key sk-secret123456"}})
    )
    with build_test_client(monkeypatch) as client:
        install_upstream(upstream)
        with caplog.at_level(logging.INFO):
            response = client.post("/proxy", json=chat_body(apiKey="sk-secret123456"))

    assert response.status_code == 401
    assert "secret123" not in caplog.text
    assert "secret123" not in response.text
    assert "proxy_request" in caplog.text
