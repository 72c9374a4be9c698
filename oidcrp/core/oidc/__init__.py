"""OpenID Connect relying party components."""

from oidcrp.core.oidc.client import (
    AuthorizationRequest,
    TokenClient,
    TokenResponse,
    generate_code_challenge,
    generate_code_verifier,
)
from oidcrp.core.oidc.discovery import OIDCDiscoveryResult, fetch_oidc_discovery
from oidcrp.core.oidc.flows import AuthorizationCodeFlow, LoginResult
from oidcrp.core.oidc.identity import (
    IdentityAction,
    IdentityHost,
    LocalIdentityRef,
    ResolvedIdentity,
    resolve_identity,
)
from oidcrp.core.oidc.session import RefreshResult, RefreshStatus, SessionManager
from oidcrp.core.oidc.state import AuthRequestState, InMemoryStateStore, StateStore
from oidcrp.core.oidc.utils import DecodedToken, decode_jwt, merge_claims
from oidcrp.core.oidc.validation import IdTokenClaims, IdTokenValidator, JWKSManager

__all__ = [
    # Client
    "AuthorizationRequest",
    "TokenClient",
    "TokenResponse",
    "generate_code_challenge",
    "generate_code_verifier",
    # Discovery
    "OIDCDiscoveryResult",
    "fetch_oidc_discovery",
    # Flows
    "AuthorizationCodeFlow",
    "LoginResult",
    # Identity
    "IdentityAction",
    "IdentityHost",
    "LocalIdentityRef",
    "ResolvedIdentity",
    "resolve_identity",
    # Session
    "RefreshResult",
    "RefreshStatus",
    "SessionManager",
    # State
    "AuthRequestState",
    "InMemoryStateStore",
    "StateStore",
    # Utils
    "DecodedToken",
    "decode_jwt",
    "merge_claims",
    # Validation
    "IdTokenClaims",
    "IdTokenValidator",
    "JWKSManager",
]
