"""OpenID Provider configuration discovery.

Fetches the provider's ``.well-known/openid-configuration`` document so
endpoints and the issuer do not have to be configured by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from oidcrp.core.logging import LoggingClient, get_protocol_logger

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = ".well-known/openid-configuration"


@dataclass
class OIDCDiscoveryResult:
    """Result of OIDC discovery."""

    success: bool
    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    end_session_endpoint: str | None = None
    scopes_supported: list[str] = field(default_factory=list)
    response_types_supported: list[str] = field(default_factory=list)
    id_token_signing_alg_values_supported: list[str] = field(default_factory=list)
    code_challenge_methods_supported: list[str] = field(default_factory=list)
    error: str | None = None
    raw_config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, config: dict[str, Any]) -> OIDCDiscoveryResult:
        """Build a successful result from a provider configuration document."""
        return cls(
            success=True,
            issuer=config.get("issuer"),
            authorization_endpoint=config.get("authorization_endpoint"),
            token_endpoint=config.get("token_endpoint"),
            userinfo_endpoint=config.get("userinfo_endpoint"),
            jwks_uri=config.get("jwks_uri"),
            end_session_endpoint=config.get("end_session_endpoint"),
            scopes_supported=config.get("scopes_supported", []),
            response_types_supported=config.get("response_types_supported", []),
            id_token_signing_alg_values_supported=config.get("id_token_signing_alg_values_supported", []),
            code_challenge_methods_supported=config.get("code_challenge_methods_supported", []),
            raw_config=config,
        )


def discovery_url_for(issuer_or_url: str) -> str:
    """Build the discovery URL for an issuer, leaving full URLs untouched."""
    discovery_url = issuer_or_url.rstrip("/")
    if not discovery_url.endswith(WELL_KNOWN_PATH):
        discovery_url = f"{discovery_url}/{WELL_KNOWN_PATH}"
    return discovery_url


def fetch_oidc_discovery(
    issuer_or_url: str,
    timeout: float = 10.0,
    verify_ssl: bool = True,
    http_client: httpx.Client | None = None,
) -> OIDCDiscoveryResult:
    """Fetch OIDC configuration from the well-known endpoint.

    Args:
        issuer_or_url: Either an issuer URL or full discovery URL.
            If it doesn't end with .well-known/openid-configuration,
            that path will be appended.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates.
        http_client: Client to use instead of a fresh LoggingClient.

    Returns:
        OIDCDiscoveryResult with discovered configuration or error.
    """
    discovery_url = discovery_url_for(issuer_or_url)
    logger.debug(f"Fetching OIDC discovery from {discovery_url}")

    try:
        if http_client is not None:
            response = http_client.get(discovery_url)
        else:
            with LoggingClient(protocol_logger=get_protocol_logger(), timeout=timeout, verify=verify_ssl) as client:
                response = client.get(discovery_url)
        response.raise_for_status()
        config = response.json()
    except httpx.TimeoutException:
        return OIDCDiscoveryResult(
            success=False,
            error=f"Timeout fetching OIDC configuration from {discovery_url}",
        )
    except httpx.HTTPStatusError as e:
        return OIDCDiscoveryResult(
            success=False,
            error=f"HTTP {e.response.status_code} fetching OIDC config: {e.response.text[:200]}",
        )
    except httpx.RequestError as e:
        return OIDCDiscoveryResult(
            success=False,
            error=f"Request error fetching OIDC config: {e}",
        )
    except ValueError as e:  # JSON decode error
        return OIDCDiscoveryResult(
            success=False,
            error=f"Invalid JSON in OIDC configuration: {e}",
        )

    if not isinstance(config, dict):
        return OIDCDiscoveryResult(success=False, error="OIDC configuration is not a JSON object")

    result = OIDCDiscoveryResult.from_document(config)

    # The document must describe the issuer it was fetched for
    if not issuer_or_url.rstrip("/").endswith(WELL_KNOWN_PATH):
        expected = issuer_or_url.rstrip("/")
        if (result.issuer or "").rstrip("/") != expected:
            logger.warning(f"Discovery issuer mismatch: expected {expected}, got {result.issuer}")
            return OIDCDiscoveryResult(
                success=False,
                error=f"Issuer mismatch: expected {expected}, got {result.issuer}",
                raw_config=config,
            )

    if not result.authorization_endpoint or not result.token_endpoint:
        return OIDCDiscoveryResult(
            success=False,
            error="OIDC configuration lacks authorization_endpoint or token_endpoint",
            raw_config=config,
        )

    return result
