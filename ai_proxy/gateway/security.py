from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache

from fastapi import Request
from fastapi.responses import Response

from ai_proxy.errors import ProxyError, ProxyErrorCode
from ai_proxy.gateway.rate_limit import RateLimiter

CORS_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def add_security_headers(response: Response) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response


def get_client_ip(request: Request) -> str:
    cf_ip = request.headers.get("cf-connecting-ip", "").strip()
    if cf_ip:
        return cf_ip
    forwarded_for = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded_for.split(",", 1)[0].strip()
    if first_hop:
        return first_hop
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def is_origin_allowed(origin: str | None, allowed_origins: Iterable[str]) -> bool:
    allowed = [item for item in allowed_origins if item]
    if not allowed:
        return True
    if not origin:
        # Same-origin and non-browser callers send no Origin header.
        return True
    for pattern in allowed:
        if pattern == "*" or pattern == origin:
            return True
        if "*" in pattern and _wildcard_regex(pattern).fullmatch(origin):
            return True
    return False


@lru_cache(maxsize=128)
def _wildcard_regex(pattern: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


class SecurityGate:
    """Header-only checks that run before the request body is read."""

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        max_request_bytes: int,
        allowed_origins: Iterable[str] = (),
    ) -> None:
        self.rate_limiter = rate_limiter
        self.max_request_bytes = max(1, int(max_request_bytes))
        self.allowed_origins = tuple(allowed_origins)

    async def perform_security_checks(self, request: Request) -> str:
        """Validate method, content type, size, origin and rate limit.

        Returns the caller key used for rate limiting.
        """
        if request.method != "POST":
            raise ProxyError(
                ProxyErrorCode.METHOD_NOT_ALLOWED,
                f"Method {request.method} not allowed. Allowed methods: POST",
            )

        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type.lower():
            raise ProxyError(
                ProxyErrorCode.UNSUPPORTED_MEDIA_TYPE,
                "Content-Type must be application/json",
            )

        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError as exc:
                raise ProxyError(
                    ProxyErrorCode.INVALID_REQUEST, "Invalid Content-Length header"
                ) from exc
            if size > self.max_request_bytes:
                raise ProxyError(
                    ProxyErrorCode.PAYLOAD_TOO_LARGE,
                    f"Request too large. Maximum size: {self.max_request_bytes // 1024}KB",
                )

        if not is_origin_allowed(request.headers.get("origin"), self.allowed_origins):
            raise ProxyError(ProxyErrorCode.FORBIDDEN, "Origin not allowed")

        caller_key = get_client_ip(request)
        await self.rate_limiter.enforce(caller_key)
        return caller_key
