from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

from ai_proxy.catalogs import ProviderRegistry
from ai_proxy.errors import invalid_request, unknown_provider
from ai_proxy.models import MESSAGE_ROLES, ChatMessage, MessageRole, ProxyRequest

MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0
MIN_MAX_TOKENS = 1
MAX_MAX_TOKENS = 100_000


@dataclass(slots=True, frozen=True)
class KeyCheckRequest:
    provider: str
    api_key: str
    model: str | None = None


def validate_proxy_request(raw_body: Any, registry: ProviderRegistry) -> ProxyRequest:
    """Turn an untrusted JSON body into a ProxyRequest.

    Checks run in a fixed order and the first violated constraint is reported.
    Performs no I/O; the API key is only checked for presence here.
    """
    if not isinstance(raw_body, dict) or not raw_body:
        raise invalid_request("Request body is required")

    provider = _require_provider(raw_body, registry)

    model = raw_body.get("model")
    if not isinstance(model, str) or not model.strip():
        raise invalid_request("Model is required and must be a string")

    messages = _parse_messages(raw_body.get("messages"))

    api_key = raw_body.get("apiKey")
    if not isinstance(api_key, str) or not api_key.strip():
        raise invalid_request("API key is required")

    temperature = raw_body.get("temperature")
    if temperature is not None:
        if (
            isinstance(temperature, bool)
            or not isinstance(temperature, (int, float))
            or not MIN_TEMPERATURE <= temperature <= MAX_TEMPERATURE
        ):
            raise invalid_request(
                f"Temperature must be a number between {MIN_TEMPERATURE:g} and {MAX_TEMPERATURE:g}"
            )
        temperature = float(temperature)

    max_tokens = raw_body.get("maxTokens")
    if max_tokens is not None:
        if (
            isinstance(max_tokens, bool)
            or not isinstance(max_tokens, int)
            or not MIN_MAX_TOKENS <= max_tokens <= MAX_MAX_TOKENS
        ):
            raise invalid_request(
                f"maxTokens must be an integer between {MIN_MAX_TOKENS} and {MAX_MAX_TOKENS}"
            )

    stream = raw_body.get("stream", False)
    if stream is None:
        stream = False
    if not isinstance(stream, bool):
        raise invalid_request("stream must be a boolean")

    return ProxyRequest(
        provider=provider,
        model=model.strip(),
        messages=messages,
        api_key=api_key.strip(),
        max_tokens=max_tokens,
        stream=stream,
        temperature=temperature,
    )


def validate_key_check_request(raw_body: Any, registry: ProviderRegistry) -> KeyCheckRequest:
    if not isinstance(raw_body, dict):
        raise invalid_request("Provider and apiKey are required")
    provider = raw_body.get("provider")
    api_key = raw_body.get("apiKey")
    if not provider or not isinstance(api_key, str) or not api_key:
        raise invalid_request("Provider and apiKey are required")
    if not registry.is_supported_provider(provider):
        raise unknown_provider(str(provider), registry.supported_providers())
    model = raw_body.get("model")
    if model is not None and (not isinstance(model, str) or not model.strip()):
        raise invalid_request("Model must be a non-empty string")
    return KeyCheckRequest(
        provider=cast(str, provider),
        api_key=api_key,
        model=model.strip() if isinstance(model, str) else None,
    )


def _require_provider(raw_body: dict[str, Any], registry: ProviderRegistry) -> str:
    provider = raw_body.get("provider")
    if provider is None or provider == "":
        raise invalid_request("Provider is required")
    if not registry.is_supported_provider(provider):
        raise unknown_provider(str(provider), registry.supported_providers())
    return cast(str, provider)


def _parse_messages(raw_messages: Any) -> tuple[ChatMessage, ...]:
    if not isinstance(raw_messages, list) or not raw_messages:
        raise invalid_request("Messages array is required and must not be empty")

    parsed: list[ChatMessage] = []
    for index, item in enumerate(raw_messages):
        if not isinstance(item, dict):
            raise invalid_request(f"messages[{index}] must be an object")
        role = item.get("role")
        if role not in MESSAGE_ROLES:
            raise invalid_request(
                f"messages[{index}] must have a valid role (system, user, or assistant)"
            )
        content = item.get("content")
        if not isinstance(content, str) or not content:
            raise invalid_request(f"messages[{index}] must have content as a string")
        parsed.append(ChatMessage(role=cast(MessageRole, role), content=content))
    return tuple(parsed)
