from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from fastapi.responses import JSONResponse

from ai_proxy.errors import ProxyError, ProxyErrorCode, redact_secrets
from ai_proxy.models import UnifiedResponse

logger = logging.getLogger("uvicorn.error")

AuditHook = Callable[[dict[str, Any]], None]

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"


def utc_timestamp() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def elapsed_ms(started_at: float) -> int:
    return int(round((time.perf_counter() - started_at) * 1000.0))


def success_payload(
    response: UnifiedResponse | dict[str, Any], started_at: float
) -> dict[str, Any]:
    body = response.to_dict() if isinstance(response, UnifiedResponse) else dict(response)
    body["metadata"] = {
        "duration": elapsed_ms(started_at),
        "timestamp": utc_timestamp(),
    }
    return body


def error_payload(error: ProxyError) -> dict[str, Any]:
    return error.to_dict()


def error_response(error: ProxyError) -> JSONResponse:
    headers: dict[str, str] = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(max(1, int(round(error.retry_after))))
    return JSONResponse(
        status_code=error.status_code,
        content=error_payload(error),
        headers=headers,
    )


def unexpected_error() -> ProxyError:
    return ProxyError(ProxyErrorCode.UNKNOWN_ERROR, UNEXPECTED_ERROR_MESSAGE)


def sse_event(data: dict[str, Any], event: str | None = None) -> bytes:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")


def _emit(audit_hook: AuditHook | None, event: dict[str, Any]) -> None:
    if audit_hook is None:
        return
    try:
        audit_hook(event)
    except Exception as exc:
        logger.warning("audit_hook_failed error_type=%s", exc.__class__.__name__)


def log_request_safely(
    provider: str,
    model: str,
    message_count: int,
    *,
    request_id: str | None = None,
    stream: bool = False,
    audit_hook: AuditHook | None = None,
) -> None:
    """Record request metadata only; keys and message bodies never reach the log."""
    logger.info(
        "proxy_request request_id=%s provider=%s model=%s messages=%d stream=%s",
        request_id,
        provider,
        model,
        message_count,
        stream,
    )
    _emit(
        audit_hook,
        {
            "event": "proxy_request",
            "request_id": request_id,
            "provider": provider,
            "model": model,
            "message_count": message_count,
            "stream": stream,
        },
    )


def log_error_safely(
    error: ProxyError,
    *,
    request_id: str | None = None,
    audit_hook: AuditHook | None = None,
) -> None:
    logger.warning(
        "proxy_error request_id=%s code=%s status=%d provider=%s message=%s",
        request_id,
        error.code.value,
        error.status_code,
        error.provider,
        error.message,
    )
    _emit(
        audit_hook,
        {
            "event": "proxy_error",
            "request_id": request_id,
            "code": error.code.value,
            "status": error.status_code,
            "provider": error.provider,
            "message": error.message,
        },
    )


def log_unexpected_error(
    exc: BaseException,
    *,
    secrets: Iterable[str | None] = (),
    request_id: str | None = None,
    audit_hook: AuditHook | None = None,
) -> None:
    detail = redact_secrets(str(exc) or repr(exc), secrets)
    logger.error(
        "proxy_unexpected_error request_id=%s error_type=%s error=%s",
        request_id,
        exc.__class__.__name__,
        detail,
    )
    _emit(
        audit_hook,
        {
            "event": "proxy_unexpected_error",
            "request_id": request_id,
            "error_type": exc.__class__.__name__,
            "error": detail,
        },
    )


def log_response_safely(
    response: UnifiedResponse,
    *,
    duration_ms: int,
    request_id: str | None = None,
    audit_hook: AuditHook | None = None,
) -> None:
    usage = response.usage
    logger.info(
        "proxy_response request_id=%s provider=%s model=%s duration_ms=%d total_tokens=%s",
        request_id,
        response.provider,
        response.model,
        duration_ms,
        usage.total_tokens if usage is not None else None,
    )
    _emit(
        audit_hook,
        {
            "event": "proxy_response",
            "request_id": request_id,
            "provider": response.provider,
            "model": response.model,
            "duration_ms": duration_ms,
            "usage": usage.to_dict() if usage is not None else None,
            "finish_reason": response.finish_reason,
        },
    )
