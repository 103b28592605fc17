from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from ai_proxy.adapters import ProviderAdapter, build_adapters
from ai_proxy.catalogs import ProviderConfig, ProviderRegistry
from ai_proxy.errors import ProxyError, ProxyErrorCode, redact_secrets
from ai_proxy.models import ChatMessage, ProxyRequest, UnifiedResponse
from ai_proxy.streaming import StreamSession, transport_error
from ai_proxy.validation import KeyCheckRequest

logger = logging.getLogger("uvicorn.error")

KEY_CHECK_PROMPT = "Hello"
KEY_FORMAT_INVALID = "Invalid API key format"
KEY_REJECTED = "Invalid API key"
KEY_RATE_LIMITED = "Rate limit exceeded - key appears valid but is rate limited"


@dataclass(slots=True, frozen=True)
class KeyCheckResult:
    valid: bool
    provider: str
    model: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "valid": self.valid,
            "provider": self.provider,
            "model": self.model,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class ProxyExecutor:
    """Sends exactly one upstream call per request through a shared client."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 30.0,
        write_timeout_seconds: float = 30.0,
        pool_timeout_seconds: float = 5.0,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry
        self.adapters: dict[str, ProviderAdapter] = build_adapters(registry)
        self.total_timeout = max(0.1, float(timeout_seconds))
        self.timeout = httpx.Timeout(
            timeout=None,
            connect=max(0.1, float(connect_timeout_seconds)),
            read=max(0.1, float(read_timeout_seconds)),
            write=max(0.1, float(write_timeout_seconds)),
            pool=max(0.1, float(pool_timeout_seconds)),
        )
        self.audit_hook = audit_hook
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )

    def audit(self, event: str, **fields: Any) -> None:
        if self.audit_hook is None:
            return
        self.audit_hook({"event": event, **fields})

    def adapter_for(self, provider: str) -> ProviderAdapter:
        config = self.registry.get_config(provider)
        return self.adapters[config.id]

    def timeout_for(self, config: ProviderConfig) -> httpx.Timeout:
        if config.timeout_seconds is None:
            return self.timeout
        return httpx.Timeout(
            timeout=None,
            connect=self.timeout.connect,
            read=max(0.1, float(config.timeout_seconds)),
            write=self.timeout.write,
            pool=self.timeout.pool,
        )

    async def execute_ai_request(
        self, request: ProxyRequest, *, request_id: str | None = None
    ) -> UnifiedResponse:
        adapter = self.adapter_for(request.provider)
        upstream_request = adapter.build_request(request.with_stream(False))
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.total_timeout):
                response = await self.client.post(
                    upstream_request.url,
                    json=upstream_request.body,
                    headers=upstream_request.headers,
                    params=upstream_request.params,
                    timeout=self.timeout_for(adapter.config),
                )
        except httpx.RequestError as exc:
            logger.warning(
                "proxy_request_error request_id=%s provider=%s error_type=%s error=%s",
                request_id,
                adapter.provider_id,
                exc.__class__.__name__,
                redact_secrets(str(exc), (request.api_key,)),
            )
            raise transport_error(exc, adapter.provider_id, request.api_key) from exc
        except TimeoutError as exc:
            logger.warning(
                "proxy_request_timeout request_id=%s provider=%s timeout_seconds=%.1f",
                request_id,
                adapter.provider_id,
                self.total_timeout,
            )
            raise ProxyError(
                ProxyErrorCode.TRANSPORT_ERROR,
                "Request to provider timed out",
                provider=adapter.provider_id,
            ) from exc

        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_upstream_connected request_id=%s provider=%s url=%s status=%d latency_ms=%.2f",
            request_id,
            adapter.provider_id,
            upstream_request.url,
            response.status_code,
            latency_ms,
        )
        self.audit(
            "proxy_upstream_connected",
            request_id=request_id,
            provider=adapter.provider_id,
            status=response.status_code,
            latency_ms=round(latency_ms, 3),
        )

        if not response.is_success:
            raise adapter.translate_error(
                response.status_code, response.headers, response.content, request.api_key
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise adapter.malformed_response("response body is not valid JSON") from exc
        return adapter.parse_response(payload, request)

    async def execute_streaming_request(
        self,
        request: ProxyRequest,
        *,
        request_id: str | None = None,
        on_complete: Callable[[], Awaitable[None]] | None = None,
    ) -> StreamSession:
        """Connect upstream and return an open session ready for ``iter_sse()``."""
        adapter = self.adapter_for(request.provider)
        streaming_request = request.with_stream(True)
        session = StreamSession(
            client=self.client,
            adapter=adapter,
            request=streaming_request,
            upstream_request=adapter.build_request(streaming_request),
            timeout=self.timeout_for(adapter.config),
            request_id=request_id,
            audit=self.audit,
            on_complete=on_complete,
        )
        await session.open()
        return session

    async def check_api_key(
        self,
        check: KeyCheckRequest,
        *,
        max_tokens: int = 1,
        request_id: str | None = None,
    ) -> KeyCheckResult:
        model = check.model or self.registry.get_default_model(check.provider)
        if not self.registry.validate_api_key_format(check.provider, check.api_key):
            return KeyCheckResult(
                valid=False, provider=check.provider, model=model, error=KEY_FORMAT_INVALID
            )

        probe = ProxyRequest(
            provider=check.provider,
            model=model,
            messages=(ChatMessage(role="user", content=KEY_CHECK_PROMPT),),
            api_key=check.api_key,
            max_tokens=max(1, int(max_tokens)),
        )
        try:
            await self.execute_ai_request(probe, request_id=request_id)
        except ProxyError as exc:
            if exc.code == ProxyErrorCode.INVALID_API_KEY:
                error = KEY_REJECTED
                valid = False
            elif exc.code == ProxyErrorCode.RATE_LIMIT_EXCEEDED:
                error = KEY_RATE_LIMITED
                valid = True
            else:
                error = exc.message
                valid = False
            logger.info(
                "proxy_key_check request_id=%s provider=%s valid=%s code=%s",
                request_id,
                check.provider,
                valid,
                exc.code.value,
            )
            return KeyCheckResult(valid=valid, provider=check.provider, model=model, error=error)

        logger.info(
            "proxy_key_check request_id=%s provider=%s valid=true", request_id, check.provider
        )
        return KeyCheckResult(valid=True, provider=check.provider, model=model)

    async def close(self) -> None:
        await self.client.aclose()
