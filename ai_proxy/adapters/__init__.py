from __future__ import annotations

from ai_proxy.adapters.anthropic import AnthropicAdapter
from ai_proxy.adapters.base import ProviderAdapter
from ai_proxy.adapters.google import GoogleAdapter
from ai_proxy.adapters.openai import OpenAIAdapter
from ai_proxy.catalogs import ProviderConfig, ProviderRegistry

ADAPTERS_BY_WIRE_FORMAT: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
}


def build_adapter(config: ProviderConfig) -> ProviderAdapter:
    adapter_cls = ADAPTERS_BY_WIRE_FORMAT.get(config.wire_format)
    if adapter_cls is None:
        raise ValueError(f"No adapter for wire format '{config.wire_format}'")
    return adapter_cls(config)


def build_adapters(registry: ProviderRegistry) -> dict[str, ProviderAdapter]:
    return {
        provider_id: build_adapter(registry.get_config(provider_id))
        for provider_id in registry.supported_providers()
    }


__all__ = [
    "ADAPTERS_BY_WIRE_FORMAT",
    "AnthropicAdapter",
    "GoogleAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "build_adapter",
    "build_adapters",
]
