from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ai_proxy.catalogs.paths import CatalogDataPaths
from ai_proxy.errors import ProxyError, ProxyErrorCode, unknown_provider
from ai_proxy.utils.yaml_utils import load_yaml_dict

WireFormat = Literal["openai", "anthropic", "google"]
AuthHeaderFormat = Literal["bearer", "raw", "query"]


class RegistryValidationError(ValueError):
    def __init__(self, errors: list[str]):
        self.errors = errors
        message = "Provider registry validation failed:\n" + "\n".join(
            f"- {item}" for item in errors
        )
        super().__init__(message)


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    display_name: str
    base_url: str
    wire_format: WireFormat
    auth_header_name: str
    auth_header_format: AuthHeaderFormat = "bearer"
    extra_headers: dict[str, str] = Field(default_factory=dict)
    default_model: str
    models: list[str] = Field(default_factory=list)
    key_format_pattern: str | None = None
    default_max_tokens: int = 4000
    default_temperature: float = 0.7
    timeout_seconds: float | None = None

    @property
    def key_format_regex(self) -> re.Pattern[str] | None:
        if not self.key_format_pattern:
            return None
        return _compile_pattern(self.key_format_pattern)

    def auth_headers(self, api_key: str) -> dict[str, str]:
        if self.auth_header_format == "bearer":
            return {self.auth_header_name: f"Bearer {api_key}"}
        if self.auth_header_format == "raw":
            return {self.auth_header_name: api_key}
        return {}

    def auth_params(self, api_key: str) -> dict[str, str]:
        if self.auth_header_format == "query":
            return {self.auth_header_name: api_key}
        return {}


@dataclass(frozen=True)
class ProviderRegistry:
    """Read-only provider lookups, built once at startup."""

    providers: dict[str, ProviderConfig]

    def supported_providers(self) -> list[str]:
        return list(self.providers)

    def is_supported_provider(self, provider_id: Any) -> bool:
        return isinstance(provider_id, str) and provider_id in self.providers

    def get_config(self, provider_id: str) -> ProviderConfig:
        config = self.providers.get(provider_id)
        if config is None:
            raise unknown_provider(provider_id, self.supported_providers())
        return config

    def get_default_model(self, provider_id: str) -> str:
        return self.get_config(provider_id).default_model

    def validate_api_key_format(self, provider_id: str, api_key: str) -> bool:
        """Cheap local shape check; says nothing about whether the key is live."""
        config = self.providers.get(provider_id)
        if config is None or not isinstance(api_key, str):
            return False
        regex = config.key_format_regex
        if regex is None:
            return len(api_key) > 0
        return regex.fullmatch(api_key) is not None

    def require_api_key_format(self, provider_id: str, api_key: str) -> None:
        if not self.validate_api_key_format(provider_id, api_key):
            raise ProxyError(
                ProxyErrorCode.INVALID_API_KEY,
                f"Invalid API key format for {provider_id}",
                provider=provider_id,
            )


def load_provider_registry(override_path: str | Path | None = None) -> ProviderRegistry:
    raw_entries = _raw_provider_entries(CatalogDataPaths.providers_yaml())
    if override_path:
        for provider_id, entry in _raw_provider_entries(Path(override_path)).items():
            merged = dict(raw_entries.get(provider_id, {}))
            merged.update(entry)
            raw_entries[provider_id] = merged

    errors: list[str] = []
    providers: dict[str, ProviderConfig] = {}
    for provider_id, entry in raw_entries.items():
        try:
            providers[provider_id] = ProviderConfig.model_validate(
                {**entry, "id": provider_id}
            )
        except ValidationError as exc:
            for issue in exc.errors():
                location = ".".join(str(part) for part in issue["loc"])
                errors.append(f"providers.{provider_id}.{location}: {issue['msg']}")
            continue
        pattern = providers[provider_id].key_format_pattern
        if pattern:
            try:
                re.compile(pattern)
            except re.error as exc:
                errors.append(
                    f"providers.{provider_id}.key_format_pattern: invalid regex ({exc})"
                )
    if not providers and not errors:
        errors.append("providers: at least one provider must be configured")
    if errors:
        raise RegistryValidationError(errors)
    return ProviderRegistry(providers=providers)


def _raw_provider_entries(path: Path) -> dict[str, dict[str, Any]]:
    payload = load_yaml_dict(path)
    raw = payload.get("providers") or {}
    if not isinstance(raw, dict):
        raise RegistryValidationError([f"{path}: 'providers' must be a mapping"])
    entries: dict[str, dict[str, Any]] = {}
    for provider_id, entry in raw.items():
        if not isinstance(entry, dict):
            raise RegistryValidationError(
                [f"{path}: providers.{provider_id} must be a mapping"]
            )
        entries[str(provider_id)] = entry
    return entries


@lru_cache(maxsize=64)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)
