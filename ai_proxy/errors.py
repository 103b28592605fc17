from __future__ import annotations

import re
from collections.abc import Iterable
from enum import Enum
from typing import Any


class ProxyErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_API_KEY = "INVALID_API_KEY"
    FORBIDDEN = "FORBIDDEN"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


STATUS_BY_CODE: dict[ProxyErrorCode, int] = {
    ProxyErrorCode.INVALID_REQUEST: 400,
    ProxyErrorCode.UNKNOWN_PROVIDER: 400,
    ProxyErrorCode.UNAUTHORIZED: 401,
    ProxyErrorCode.INVALID_API_KEY: 401,
    ProxyErrorCode.FORBIDDEN: 403,
    ProxyErrorCode.METHOD_NOT_ALLOWED: 405,
    ProxyErrorCode.PAYLOAD_TOO_LARGE: 413,
    ProxyErrorCode.UNSUPPORTED_MEDIA_TYPE: 415,
    ProxyErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ProxyErrorCode.USAGE_LIMIT_REACHED: 429,
    ProxyErrorCode.UNKNOWN_ERROR: 500,
    ProxyErrorCode.UPSTREAM_ERROR: 502,
    ProxyErrorCode.TRANSPORT_ERROR: 504,
}

# Key shapes issued by the supported vendors.
_KEY_PATTERNS = (
    re.compile(r"sk-ant-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"sk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"gsk_[A-Za-z0-9]{8,}"),
    re.compile(r"AIza[A-Za-z0-9_\-]{20,}"),
)
_REDACTED = "[redacted]"


def redact_secrets(text: str, secrets: Iterable[str | None] = ()) -> str:
    redacted = text
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, _REDACTED)
    for pattern in _KEY_PATTERNS:
        redacted = pattern.sub(_REDACTED, redacted)
    return redacted


class ProxyError(Exception):
    """A classified failure that maps to exactly one HTTP status."""

    def __init__(
        self,
        code: ProxyErrorCode,
        message: str,
        *,
        provider: str | None = None,
        provider_detail: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider = provider
        self.provider_detail = provider_detail
        self.retry_after = retry_after

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE[self.code]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code.value}
        if self.provider:
            payload["provider"] = self.provider
        if self.provider_detail:
            payload["details"] = self.provider_detail
        if self.retry_after is not None:
            payload["retryAfter"] = int(round(self.retry_after))
        return payload

    def __repr__(self) -> str:
        return (
            f"ProxyError(code={self.code.value!r}, status={self.status_code}, "
            f"message={self.message!r})"
        )


def invalid_request(message: str) -> ProxyError:
    return ProxyError(ProxyErrorCode.INVALID_REQUEST, message)


def unknown_provider(provider: str, supported: Iterable[str]) -> ProxyError:
    return ProxyError(
        ProxyErrorCode.UNKNOWN_PROVIDER,
        f"Unsupported provider: {provider}. Supported providers: {', '.join(supported)}",
    )
