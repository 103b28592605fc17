from ai_proxy.catalogs.registry import (
    ProviderConfig,
    ProviderRegistry,
    RegistryValidationError,
    load_provider_registry,
)

__all__ = [
    "ProviderConfig",
    "ProviderRegistry",
    "RegistryValidationError",
    "load_provider_registry",
]
