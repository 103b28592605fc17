from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    providers_config_path: str | None = None
    provider_timeout_seconds: float = 120.0
    provider_connect_timeout_seconds: float = 5.0
    provider_read_timeout_seconds: float = 30.0
    provider_write_timeout_seconds: float = 30.0
    provider_pool_timeout_seconds: float = 5.0
    rate_limit_enabled: bool = True
    rate_limit_rules: str = "20/60,100/3600"
    rate_limit_max_tracked_keys: int = 10000
    redis_url: str | None = None
    max_request_bytes: int = 1024 * 1024
    allowed_origins: str = ""
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    oauth_enabled: bool = False
    oauth_issuer: str | None = None
    oauth_audience: str | None = None
    oauth_jwks_url: str | None = None
    oauth_algorithms: str = "RS256"
    oauth_jwt_secret: str | None = None
    oauth_clock_skew_seconds: int = 30
    oauth_role_claim: str = "role"
    usage_limit_enabled: bool = False
    usage_max_generations: int = 3
    usage_unlimited_roles: str = "admin"
    validation_max_tokens: int = 1
    audit_log_enabled: bool = False
    audit_log_path: str = "logs/ai_proxy_audit.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)

    @property
    def oauth_algorithms_list(self) -> list[str]:
        values = _split_csv(self.oauth_algorithms)
        return values or ["RS256"]

    @property
    def allowed_origins_list(self) -> list[str]:
        return _split_csv(self.allowed_origins)

    @property
    def usage_unlimited_roles_list(self) -> list[str]:
        return _split_csv(self.usage_unlimited_roles)

    @property
    def rate_limit_rules_list(self) -> list[tuple[int, float]]:
        """Parse ``limit/window_seconds`` pairs, e.g. ``"20/60,100/3600"``."""
        rules: list[tuple[int, float]] = []
        for item in _split_csv(self.rate_limit_rules):
            limit, sep, window = item.partition("/")
            if not sep:
                raise ValueError(
                    f"Invalid rate limit rule '{item}'. Expected 'limit/window_seconds'."
                )
            rules.append((int(limit.strip()), float(window.strip())))
        return rules


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
