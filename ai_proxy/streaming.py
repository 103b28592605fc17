from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any

import httpx

from ai_proxy.adapters import ProviderAdapter
from ai_proxy.envelope import sse_event
from ai_proxy.errors import ProxyError, ProxyErrorCode, redact_secrets
from ai_proxy.models import FinishReason, ProxyRequest, StreamChunk, UpstreamRequest

logger = logging.getLogger("uvicorn.error")

AuditFn = Callable[..., None]


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.ABORTED, StreamState.ERRORED})


class StreamSession:
    """One relayed completion stream.

    ``open()`` connects and fails with ProxyError before any byte reaches the
    caller. ``iter_sse()`` then yields normalized SSE events in arrival order.
    The upstream response is closed whichever terminal state is reached.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        adapter: ProviderAdapter,
        request: ProxyRequest,
        upstream_request: UpstreamRequest,
        timeout: httpx.Timeout | None = None,
        request_id: str | None = None,
        audit: AuditFn | None = None,
        on_complete: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.client = client
        self.adapter = adapter
        self.request = request
        self.upstream_request = upstream_request
        self.timeout = timeout
        self.request_id = request_id
        self._audit = audit
        self._on_complete = on_complete
        self._response: httpx.Response | None = None
        self.state = StreamState.IDLE
        self.chunks_relayed = 0

    @property
    def provider(self) -> str:
        return self.adapter.provider_id

    def _transition(self, state: StreamState) -> None:
        if self.state in TERMINAL_STATES:
            return
        self.state = state

    def _emit_audit(self, event: str, **fields: Any) -> None:
        if self._audit is not None:
            self._audit(event, request_id=self.request_id, provider=self.provider, **fields)

    async def open(self) -> None:
        if self.state != StreamState.IDLE:
            raise RuntimeError(f"stream session already {self.state.value}")
        self._transition(StreamState.CONNECTING)

        build_kwargs: dict[str, Any] = {
            "method": "POST",
            "url": self.upstream_request.url,
            "json": self.upstream_request.body,
            "headers": self.upstream_request.headers,
            "params": self.upstream_request.params,
        }
        if self.timeout is not None:
            build_kwargs["timeout"] = self.timeout
        upstream_call = self.client.build_request(**build_kwargs)
        try:
            response = await self.client.send(upstream_call, stream=True)
        except httpx.RequestError as exc:
            self._transition(StreamState.ERRORED)
            raise transport_error(exc, self.provider, self.request.api_key) from exc

        logger.info(
            "proxy_upstream_connected request_id=%s provider=%s url=%s status=%d stream=true",
            self.request_id,
            self.provider,
            self.upstream_request.url,
            response.status_code,
        )
        self._emit_audit("proxy_upstream_connected", status=response.status_code, stream=True)

        if response.status_code < 200 or response.status_code >= 300:
            try:
                body = await response.aread()
            except httpx.RequestError:
                body = b""
            finally:
                await response.aclose()
            self._transition(StreamState.ERRORED)
            raise self.adapter.translate_error(
                response.status_code, response.headers, body, self.request.api_key
            )

        self._response = response
        self._transition(StreamState.STREAMING)

    async def iter_sse(self) -> AsyncIterator[bytes]:
        if self.state != StreamState.STREAMING or self._response is None:
            raise RuntimeError("stream session is not open")
        response = self._response
        finish_reason: FinishReason | None = None
        try:
            async for line in response.aiter_lines():
                chunk = self.adapter.parse_stream_chunk(line, self.request.api_key)
                if chunk is None:
                    continue
                if chunk.finish_reason is not None:
                    finish_reason = chunk.finish_reason
                if chunk.delta:
                    self.chunks_relayed += 1
                    yield sse_event(StreamChunk(delta=chunk.delta).to_dict())
                if chunk.done:
                    yield sse_event(
                        StreamChunk(delta="", done=True, finish_reason=finish_reason).to_dict()
                    )
                    break
            self._transition(StreamState.COMPLETED)
        except ProxyError as exc:
            self._transition(StreamState.ERRORED)
            self._log_stream_error(exc)
            yield _error_event(exc)
        except httpx.RequestError as exc:
            self._transition(StreamState.ERRORED)
            error = transport_error(exc, self.provider, self.request.api_key)
            self._log_stream_error(error)
            yield _error_event(error)
        except (GeneratorExit, asyncio.CancelledError):
            self._transition(StreamState.ABORTED)
            raise
        finally:
            if self.state == StreamState.STREAMING:
                # Left without reaching a terminal state, e.g. the consumer
                # stopped iterating.
                self._transition(StreamState.ABORTED)
            await self.aclose()

        if self.state == StreamState.COMPLETED and self._on_complete is not None:
            await self._on_complete()

    def _log_stream_error(self, error: ProxyError) -> None:
        logger.warning(
            "proxy_stream_error request_id=%s provider=%s code=%s chunks=%d detail=%s",
            self.request_id,
            self.provider,
            error.code.value,
            self.chunks_relayed,
            error.provider_detail,
        )
        self._emit_audit("proxy_stream_error", code=error.code.value)

    async def aclose(self) -> None:
        response = self._response
        if response is None:
            return
        self._response = None
        await response.aclose()
        if self.state == StreamState.STREAMING:
            self._transition(StreamState.ABORTED)
        logger.info(
            "proxy_stream_closed request_id=%s provider=%s state=%s chunks=%d",
            self.request_id,
            self.provider,
            self.state.value,
            self.chunks_relayed,
        )
        self._emit_audit(
            "proxy_stream_closed", state=self.state.value, chunks=self.chunks_relayed
        )


def _error_event(error: ProxyError) -> bytes:
    return sse_event({"error": error.message, "code": error.code.value}, event="error")


def transport_error(exc: httpx.RequestError, provider: str, api_key: str | None) -> ProxyError:
    if isinstance(exc, httpx.TimeoutException):
        message = "Request to provider timed out"
    else:
        message = "Failed to reach provider"
    detail = str(exc).strip() or exc.__class__.__name__
    return ProxyError(
        ProxyErrorCode.TRANSPORT_ERROR,
        message,
        provider=provider,
        provider_detail=redact_secrets(detail, (api_key,)),
    )
