from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from ai_proxy import __version__
from ai_proxy.catalogs import ProviderRegistry, load_provider_registry
from ai_proxy.envelope import (
    AuditHook,
    elapsed_ms,
    error_response,
    log_error_safely,
    log_request_safely,
    log_response_safely,
    log_unexpected_error,
    success_payload,
    unexpected_error,
)
from ai_proxy.errors import ProxyError, ProxyErrorCode, invalid_request
from ai_proxy.executor import ProxyExecutor
from ai_proxy.gateway.audit import JsonlAuditLogger
from ai_proxy.gateway.auth import Authenticator, CallerIdentity
from ai_proxy.gateway.rate_limit import RateLimiter, build_rate_limiter
from ai_proxy.gateway.security import SecurityGate, add_security_headers
from ai_proxy.gateway.usage import InMemoryUsageStore, UsagePolicy
from ai_proxy.settings import Settings, get_settings
from ai_proxy.validation import validate_key_check_request, validate_proxy_request

app = FastAPI(
    title="AI Provider Proxy",
    description="Provider-agnostic chat completion proxy with key validation and SSE streaming.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")
# httpx logs full request URLs at INFO, and Gemini URLs carry the caller's key.
logging.getLogger("httpx").setLevel(logging.WARNING)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Content-Type-Options": "nosniff",
}

# Non-POST methods are routed too so the gate can answer with a proper 405.
GATED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    registry = load_provider_registry(settings.providers_config_path)
    audit_logger = JsonlAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
    )

    def audit_event_hook(event: dict[str, Any]) -> None:
        audit_logger.log(event)

    rate_limiter = build_rate_limiter(
        rules=settings.rate_limit_rules_list,
        enabled=settings.rate_limit_enabled,
        max_tracked_keys=settings.rate_limit_max_tracked_keys,
        redis_url=settings.redis_url,
        logger=logger,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.audit_logger = audit_logger
    app.state.audit_event_hook = audit_event_hook
    app.state.rate_limiter = rate_limiter
    app.state.security_gate = SecurityGate(
        rate_limiter=rate_limiter,
        max_request_bytes=settings.max_request_bytes,
        allowed_origins=settings.allowed_origins_list,
    )
    app.state.authenticator = Authenticator(settings)
    app.state.usage_policy = UsagePolicy(
        store=InMemoryUsageStore(max_keys=settings.rate_limit_max_tracked_keys),
        enabled=settings.usage_limit_enabled,
        max_generations=settings.usage_max_generations,
        unlimited_roles=settings.usage_unlimited_roles_list,
    )
    app.state.executor = ProxyExecutor(
        registry,
        timeout_seconds=settings.provider_timeout_seconds,
        connect_timeout_seconds=settings.provider_connect_timeout_seconds,
        read_timeout_seconds=settings.provider_read_timeout_seconds,
        write_timeout_seconds=settings.provider_write_timeout_seconds,
        pool_timeout_seconds=settings.provider_pool_timeout_seconds,
        audit_hook=audit_event_hook,
    )
    logger.info(
        (
            "startup complete providers=%s rate_limit_enabled=%s rate_limit_rules=%s "
            "auth_required=%s usage_limit_enabled=%s audit_log_enabled=%s"
        ),
        ",".join(registry.supported_providers()),
        settings.rate_limit_enabled,
        settings.rate_limit_rules,
        settings.ingress_auth_required,
        settings.usage_limit_enabled,
        settings.audit_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    executor: ProxyExecutor | None = getattr(app.state, "executor", None)
    if executor is not None:
        await executor.close()
    rate_limiter: RateLimiter | None = getattr(app.state, "rate_limiter", None)
    if rate_limiter is not None:
        await rate_limiter.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


def _audit_hook() -> AuditHook | None:
    return getattr(app.state, "audit_event_hook", None)


async def _read_json_body(request: Request, settings: Settings) -> Any:
    body = await request.body()
    # Content-Length may be absent (chunked uploads), so size is checked again here.
    if len(body) > settings.max_request_bytes:
        raise ProxyError(
            ProxyErrorCode.PAYLOAD_TOO_LARGE,
            f"Request too large. Maximum size: {settings.max_request_bytes // 1024}KB",
        )
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise invalid_request("Invalid JSON in request body") from exc


async def _guarded(
    request: Request,
    handler: Callable[[str, list[str]], Awaitable[Response]],
) -> Response:
    """Run an endpoint body and map every failure onto the error envelope."""
    request_id = _request_id(request)
    # Filled in by the handler once the caller's key is known, for redaction.
    secrets: list[str] = []
    audit_hook = _audit_hook()
    try:
        response = await handler(request_id, secrets)
    except ProxyError as exc:
        log_error_safely(exc, request_id=request_id, audit_hook=audit_hook)
        response = error_response(exc)
    except Exception as exc:
        log_unexpected_error(
            exc, secrets=secrets, request_id=request_id, audit_hook=audit_hook
        )
        response = error_response(unexpected_error())
    response.headers["X-Request-ID"] = request_id
    return add_security_headers(response)


async def _admit_caller(request: Request) -> CallerIdentity:
    gate: SecurityGate = app.state.security_gate
    authenticator: Authenticator = app.state.authenticator
    usage_policy: UsagePolicy = app.state.usage_policy
    client_ip = await gate.perform_security_checks(request)
    identity = authenticator.identify(request, client_ip)
    await usage_policy.check(identity)
    return identity


@app.api_route("/proxy", methods=GATED_METHODS)
async def proxy(request: Request) -> Response:
    async def handle(request_id: str, secrets: list[str]) -> Response:
        started = time.perf_counter()
        identity = await _admit_caller(request)
        settings: Settings = app.state.settings
        registry: ProviderRegistry = app.state.registry
        executor: ProxyExecutor = app.state.executor
        usage_policy: UsagePolicy = app.state.usage_policy

        raw_body = await _read_json_body(request, settings)
        proxy_request = validate_proxy_request(raw_body, registry).with_stream(False)
        secrets.append(proxy_request.api_key)
        registry.require_api_key_format(proxy_request.provider, proxy_request.api_key)
        log_request_safely(
            proxy_request.provider,
            proxy_request.model,
            len(proxy_request.messages),
            request_id=request_id,
            audit_hook=_audit_hook(),
        )

        result = await executor.execute_ai_request(proxy_request, request_id=request_id)
        await usage_policy.record_success(identity)
        log_response_safely(
            result,
            duration_ms=elapsed_ms(started),
            request_id=request_id,
            audit_hook=_audit_hook(),
        )
        return JSONResponse(content=success_payload(result, started))

    return await _guarded(request, handle)


@app.api_route("/stream", methods=GATED_METHODS)
async def stream(request: Request) -> Response:
    async def handle(request_id: str, secrets: list[str]) -> Response:
        identity = await _admit_caller(request)
        settings: Settings = app.state.settings
        registry: ProviderRegistry = app.state.registry
        executor: ProxyExecutor = app.state.executor
        usage_policy: UsagePolicy = app.state.usage_policy

        raw_body = await _read_json_body(request, settings)
        proxy_request = validate_proxy_request(raw_body, registry).with_stream(True)
        secrets.append(proxy_request.api_key)
        registry.require_api_key_format(proxy_request.provider, proxy_request.api_key)
        log_request_safely(
            proxy_request.provider,
            proxy_request.model,
            len(proxy_request.messages),
            request_id=request_id,
            stream=True,
            audit_hook=_audit_hook(),
        )

        session = await executor.execute_streaming_request(
            proxy_request,
            request_id=request_id,
            on_complete=partial(usage_policy.record_success, identity),
        )
        return StreamingResponse(
            session.iter_sse(),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
            background=BackgroundTask(session.aclose),
        )

    return await _guarded(request, handle)


@app.api_route("/validate", methods=GATED_METHODS)
async def validate(request: Request) -> Response:
    async def handle(request_id: str, secrets: list[str]) -> Response:
        gate: SecurityGate = app.state.security_gate
        settings: Settings = app.state.settings
        registry: ProviderRegistry = app.state.registry
        executor: ProxyExecutor = app.state.executor

        await gate.perform_security_checks(request)
        raw_body = await _read_json_body(request, settings)
        check = validate_key_check_request(raw_body, registry)
        secrets.append(check.api_key)
        result = await executor.check_api_key(
            check,
            max_tokens=settings.validation_max_tokens,
            request_id=request_id,
        )
        return JSONResponse(content=result.to_dict())

    return await _guarded(request, handle)


@app.options("/proxy")
@app.options("/stream")
@app.options("/validate")
async def preflight() -> Response:
    return add_security_headers(Response(status_code=204))


@app.get("/health")
async def health() -> Response:
    return add_security_headers(JSONResponse(content={"status": "ok"}))


@app.get("/providers")
async def providers() -> Response:
    registry: ProviderRegistry = app.state.registry
    items = []
    for provider_id in registry.supported_providers():
        config = registry.get_config(provider_id)
        items.append(
            {
                "id": config.id,
                "name": config.display_name,
                "defaultModel": config.default_model,
                "models": list(config.models),
            }
        )
    return add_security_headers(JSONResponse(content={"providers": items}))


def run() -> None:
    import uvicorn

    uvicorn.run("ai_proxy.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
