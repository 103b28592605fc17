from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Request
from jwt import PyJWKClient
from jwt.types import Options

from ai_proxy.errors import ProxyError, ProxyErrorCode
from ai_proxy.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when ingress authentication is enabled but misconfigured."""


@dataclass(slots=True, frozen=True)
class CallerIdentity:
    method: str
    principal: str
    role: str | None = None
    client_ip: str = "unknown"

    @property
    def usage_key(self) -> str:
        if self.method == "anonymous":
            return f"ip:{self.client_ip}"
        return f"{self.method}:{self.principal}"


class OAuthVerifier:
    def __init__(self, settings: Settings):
        self.algorithms = settings.oauth_algorithms_list
        self.audience = settings.oauth_audience
        self.issuer = settings.oauth_issuer
        self.clock_skew = settings.oauth_clock_skew_seconds
        self.role_claim = settings.oauth_role_claim
        self.jwt_secret = settings.oauth_jwt_secret
        self.jwks_client: PyJWKClient | None = None

        if self.jwt_secret:
            return

        if settings.oauth_jwks_url:
            jwks_url = settings.oauth_jwks_url
        elif settings.oauth_issuer:
            jwks_url = settings.oauth_issuer.rstrip("/") + "/.well-known/jwks.json"
        else:
            raise AuthConfigurationError(
                "OAuth is enabled but no JWT verification source is configured. "
                "Set OAUTH_JWKS_URL or OAUTH_ISSUER, or use OAUTH_JWT_SECRET "
                "for shared-secret tokens.",
            )

        self.jwks_client = PyJWKClient(jwks_url)

    def verify(self, token: str, client_ip: str) -> CallerIdentity:
        if self.jwt_secret:
            signing_key: Any = self.jwt_secret
        else:
            if not self.jwks_client:
                raise AuthConfigurationError("OAuth verifier is missing a JWKS client.")
            signing_key = self.jwks_client.get_signing_key_from_jwt(token).key

        options: Options = {"verify_aud": self.audience is not None}
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=self.algorithms,
            issuer=self.issuer,
            audience=self.audience,
            options=options,
            leeway=self.clock_skew,
        )

        principal = str(
            claims.get("sub")
            or claims.get("email")
            or claims.get("client_id")
            or "oauth-user",
        )
        raw_role = claims.get(self.role_claim)
        role = str(raw_role).strip() if raw_role is not None else None
        return CallerIdentity(
            method="oauth",
            principal=principal,
            role=role or None,
            client_ip=client_ip,
        )


class Authenticator:
    """Resolves who is calling; the proxy never issues sessions itself."""

    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self.api_keys = set(settings.ingress_api_keys_list)
        self.oauth_verifier: OAuthVerifier | None = None

        if settings.oauth_enabled:
            self.oauth_verifier = OAuthVerifier(settings)

        if self.required and not self.api_keys and not self.oauth_verifier:
            raise AuthConfigurationError(
                "Ingress auth is required, but no API keys or OAuth verifier are configured.",
            )

    def identify(self, request: Request, client_ip: str) -> CallerIdentity:
        if not self.required:
            return CallerIdentity(method="anonymous", principal=client_ip, client_ip=client_ip)

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _unauthorized("Missing Bearer token.")

        bearer_token = token.strip()
        if bearer_token in self.api_keys:
            return CallerIdentity(
                method="api_key",
                principal="api-key-client",
                client_ip=client_ip,
            )

        if self.oauth_verifier:
            try:
                return self.oauth_verifier.verify(bearer_token, client_ip)
            except jwt.PyJWTError as exc:
                raise _unauthorized("Invalid OAuth token.") from exc

        raise _unauthorized("Invalid API key or OAuth token.")


def _unauthorized(message: str) -> ProxyError:
    return ProxyError(ProxyErrorCode.UNAUTHORIZED, message)
