from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fastapi import Request
from fastapi.responses import Response

from ai_proxy.errors import ProxyError, ProxyErrorCode
from ai_proxy.gateway.rate_limit import InMemoryRateLimitStore, RateLimiter, RateLimitRule
from ai_proxy.gateway.security import (
    SecurityGate,
    add_security_headers,
    get_client_ip,
    is_origin_allowed,
)


def _request(
    method: str = "POST",
    headers: dict[str, str] | None = None,
    client: tuple[str, int] | None = ("10.0.0.9", 5555),
) -> Request:
    raw_headers = {"content-type": "application/json"}
    if headers is not None:
        raw_headers = headers
    scope: dict[str, Any] = {
        "type": "http",
        "method": method,
        "path": "/proxy",
        "query_string": b"",
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in raw_headers.items()
        ],
        "client": client,
    }
    return Request(scope)


def _gate(limit: int = 100, **kwargs: Any) -> SecurityGate:
    limiter = RateLimiter(
        rules=[RateLimitRule(limit=limit, window_seconds=60.0)],
        store=InMemoryRateLimitStore(max_keys=100, max_entries_per_key=limit),
    )
    return SecurityGate(rate_limiter=limiter, max_request_bytes=kwargs.pop("max_request_bytes", 1024), **kwargs)


def _check(gate: SecurityGate, request: Request) -> str:
    return asyncio.run(gate.perform_security_checks(request))


def _error(gate: SecurityGate, request: Request) -> ProxyError:
    with pytest.raises(ProxyError) as exc_info:
        _check(gate, request)
    return exc_info.value


def test_valid_request_returns_client_ip_as_caller_key() -> None:
    assert _check(_gate(), _request()) == "10.0.0.9"


def test_non_post_method_is_rejected() -> None:
    error = _error(_gate(), _request(method="GET"))
    assert error.code == ProxyErrorCode.METHOD_NOT_ALLOWED
    assert error.status_code == 405


def test_non_json_content_type_is_rejected() -> None:
    error = _error(_gate(), _request(headers={"content-type": "text/plain"}))
    assert error.code == ProxyErrorCode.UNSUPPORTED_MEDIA_TYPE
    assert error.status_code == 415


def test_json_content_type_with_charset_is_accepted() -> None:
    request = _request(headers={"content-type": "application/json; charset=utf-8"})
    assert _check(_gate(), request) == "10.0.0.9"


def test_oversized_content_length_is_rejected() -> None:
    request = _request(
        headers={"content-type": "application/json", "content-length": "2048"}
    )
    error = _error(_gate(max_request_bytes=1024), request)
    assert error.code == ProxyErrorCode.PAYLOAD_TOO_LARGE
    assert error.status_code == 413
    assert error.message == "Request too large. Maximum size: 1KB"


def test_malformed_content_length_is_invalid_request() -> None:
    request = _request(
        headers={"content-type": "application/json", "content-length": "lots"}
    )
    assert _error(_gate(), request).code == ProxyErrorCode.INVALID_REQUEST


def test_origin_outside_allow_list_is_forbidden() -> None:
    gate = _gate(allowed_origins=["https://app.example.com", "https://*.preview.example.com"])

    allowed = _request(
        headers={"content-type": "application/json", "origin": "https://pr-12.preview.example.com"}
    )
    denied = _request(
        headers={"content-type": "application/json", "origin": "https://evil.example.net"}
    )

    assert _check(gate, allowed) == "10.0.0.9"
    error = _error(gate, denied)
    assert error.code == ProxyErrorCode.FORBIDDEN
    assert error.status_code == 403


def test_is_origin_allowed_defaults_open() -> None:
    assert is_origin_allowed("https://anything.example", []) is True
    assert is_origin_allowed(None, ["https://app.example.com"]) is True
    assert is_origin_allowed("https://app.example.com", ["*"]) is True
    assert is_origin_allowed("https://app.example.com.evil", ["https://app.example.com"]) is False


def test_rate_limit_is_enforced_per_client_ip() -> None:
    gate = _gate(limit=2)
    request = _request()

    _check(gate, request)
    _check(gate, request)
    error = _error(gate, request)

    assert error.code == ProxyErrorCode.RATE_LIMIT_EXCEEDED
    assert error.retry_after is not None
    assert _check(gate, _request(client=("10.0.0.10", 1))) == "10.0.0.10"


def test_method_check_runs_before_rate_limit() -> None:
    gate = _gate(limit=1)
    _check(gate, _request())
    assert _error(gate, _request(method="PUT")).code == ProxyErrorCode.METHOD_NOT_ALLOWED


@pytest.mark.parametrize(
    ("headers", "client", "expected"),
    [
        ({"cf-connecting-ip": "1.1.1.1", "x-forwarded-for": "2.2.2.2"}, None, "1.1.1.1"),
        ({"x-forwarded-for": "2.2.2.2, 3.3.3.3"}, None, "2.2.2.2"),
        ({"x-real-ip": "4.4.4.4"}, ("5.5.5.5", 1), "4.4.4.4"),
        ({}, ("5.5.5.5", 1), "5.5.5.5"),
        ({}, None, "unknown"),
    ],
)
def test_get_client_ip_precedence(
    headers: dict[str, str], client: tuple[str, int] | None, expected: str
) -> None:
    assert get_client_ip(_request(headers=headers, client=client)) == expected


def test_add_security_headers_sets_cors_and_hardening_headers() -> None:
    response = add_security_headers(Response(status_code=204))

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-XSS-Protection"] == "1; mode=block"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"
