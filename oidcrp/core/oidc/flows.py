"""OIDC Authorization Code login flow.

Orchestrates one login attempt:
- Issue a state and build the authorization redirect
- Redeem the state on callback and exchange the code for tokens
- Validate the ID token and merge userinfo claims
- Resolve the local identity and hand the action to the host
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from oidcrp.core.config import ClientConfig
from oidcrp.core.errors import (
    IdentityPolicyError,
    OAuthError,
    StateError,
    StateErrorReason,
    TokenValidationError,
    TokenValidationReason,
)
from oidcrp.core.logging import ProtocolLogger, get_protocol_logger
from oidcrp.core.oidc.client import (
    AuthorizationRequest,
    TokenClient,
    TokenResponse,
    generate_code_verifier,
)
from oidcrp.core.oidc.identity import (
    IdentityAction,
    IdentityHost,
    LocalIdentityRef,
    ResolvedIdentity,
    required_claims,
    resolve_identity,
)
from oidcrp.core.oidc.state import StateStore
from oidcrp.core.oidc.utils import merge_claims
from oidcrp.core.oidc.validation import IdTokenClaims, IdTokenValidator, check_userinfo_subject

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    """A validated login waiting for the host to act on it."""

    identity: ResolvedIdentity
    tokens: TokenResponse
    claims: IdTokenClaims
    redirect_to: str | None = None


class AuthorizationCodeFlow:
    """Orchestrates the OIDC Authorization Code flow.

    This flow follows these steps:
    1. Issue a state and nonce, redirect the user to the IdP
    2. Handle the callback and redeem the state exactly once
    3. Exchange the code for tokens
    4. Validate the ID token, optionally fetch userinfo
    5. Resolve the local identity
    6. Let the host create, log in or link the account and store tokens
    """

    def __init__(
        self,
        config: ClientConfig,
        state_store: StateStore,
        host: IdentityHost,
        token_client: TokenClient | None = None,
        validator: IdTokenValidator | None = None,
        protocol_logger: ProtocolLogger | None = None,
    ) -> None:
        """Initialize the flow handler.

        Args:
            config: Client configuration; validated here.
            state_store: Store for pending authorization states.
            host: Host application account operations.
            token_client: Client for the IdP endpoints.
            validator: ID token validator.
            protocol_logger: Optional protocol logger for HTTP traffic capture.

        Raises:
            ConfigError: If the configuration is not usable.
        """
        self.config = config.validate()
        self.state_store = state_store
        self.host = host
        self.protocol_logger = protocol_logger or get_protocol_logger()
        self.token_client = token_client or TokenClient(config, protocol_logger=self.protocol_logger)
        self.validator = validator or IdTokenValidator(config)

    def begin_login(
        self,
        redirect_to: str | None = None,
        prompt: str | None = None,
        login_hint: str | None = None,
    ) -> AuthorizationRequest:
        """Start a login by issuing a state and building the redirect.

        Args:
            redirect_to: Page to return to after login; kept only when
                redirect_user_back is enabled.
            prompt: OIDC prompt parameter.
            login_hint: OIDC login_hint parameter.

        Returns:
            AuthorizationRequest with the URL to send the browser to.
        """
        code_verifier = generate_code_verifier() if self.config.use_pkce else None
        state = self.state_store.issue(
            self.config.state_ttl,
            redirect_to=redirect_to if self.config.redirect_user_back else None,
            code_verifier=code_verifier,
        )

        url = self.token_client.authorization_url(state, prompt=prompt, login_hint=login_hint)
        if self.config.url_decorator is not None:
            url = self.config.url_decorator(url)

        logger.info(f"Login started (correlation_id={state.correlation_id})")
        return AuthorizationRequest(authorization_url=url, state=state)

    def handle_callback(self, params: Mapping[str, str]) -> LoginResult:
        """Process the IdP redirect back to the client.

        Args:
            params: Callback query parameters.

        Returns:
            LoginResult for complete_login.

        Raises:
            OAuthError: If the IdP reported an error or the exchange failed.
            StateError: If the state is missing, unknown, used or expired.
            HttpError: On transport failures.
            TokenValidationError: If the ID token is not acceptable.
            IdentityPolicyError: If identity resolution rejected the login.
        """
        if params.get("error"):
            logger.warning(f"IdP returned error on callback: {params['error']}")
            raise OAuthError(params["error"], params.get("error_description"))

        state_value = params.get("state")
        if not state_value:
            logger.warning("Callback without state parameter")
            raise StateError(StateErrorReason.NOT_FOUND)

        code = params.get("code")
        if not code:
            raise OAuthError("invalid_request", "Callback has no authorization code")

        # The state is spent from here on, whatever the outcome
        state = self.state_store.consume(state_value)

        tokens = self.token_client.exchange_code(code, code_verifier=state.code_verifier)
        if not tokens.id_token:
            logger.error("Token response has no id_token")
            raise TokenValidationError(
                TokenValidationReason.MALFORMED,
                "Token response has no id_token",
                None,
            )

        claims = self.validator.validate(tokens.id_token, state.nonce)

        merged = claims.as_dict()
        if self._should_fetch_userinfo(merged):
            userinfo = self.token_client.fetch_userinfo(tokens.access_token)
            check_userinfo_subject(claims, userinfo)
            merged = merge_claims(merged, userinfo)

        if self.config.claim_transform is not None:
            merged = dict(self.config.claim_transform(merged))

        identity = resolve_identity(merged, self.config, self.host.find_local_identity)
        if identity.reason is not None:
            raise IdentityPolicyError(identity.reason, f"subject={claims.sub}")

        logger.info(
            f"Login validated (correlation_id={state.correlation_id}, action={identity.action.value})"
        )
        return LoginResult(
            identity=identity,
            tokens=tokens,
            claims=claims,
            redirect_to=state.redirect_to,
        )

    def complete_login(self, result: LoginResult) -> LocalIdentityRef:
        """Have the host carry out the resolved action and store the tokens.

        Returns:
            Reference to the local account now logged in.

        Raises:
            IdentityPolicyError: If the identity was rejected.
            ValueError: If a LOGIN or LINK result carries no local account.
        """
        identity = result.identity
        if identity.reason is not None:
            raise IdentityPolicyError(identity.reason)

        if identity.action == IdentityAction.CREATE:
            ref = self.host.create_local_identity(identity)
            logger.info(f"Created local account {ref.id}")
        elif identity.action in (IdentityAction.LOGIN, IdentityAction.LINK) and identity.local_ref is not None:
            ref = identity.local_ref
            self.host.update_local_identity(ref, identity)
            if identity.action == IdentityAction.LINK:
                logger.info(f"Linked local account {ref.id}")
        else:
            raise ValueError(f"Cannot complete a {identity.action.value} login without a local account")

        self.host.store_tokens(ref, result.tokens)
        return ref

    def end_session_url(self, ref: LocalIdentityRef | None = None) -> str | None:
        """Build the IdP logout URL for a session, if logout redirect is on."""
        if not self.config.redirect_on_logout:
            return None

        id_token_hint = None
        if ref is not None:
            tokens = self.host.load_tokens(ref)
            id_token_hint = tokens.id_token if tokens else None

        return self.token_client.end_session_url(
            id_token_hint=id_token_hint,
            post_logout_redirect_uri=self.config.post_logout_redirect_uri or None,
        )

    def _should_fetch_userinfo(self, claims: Mapping[str, Any]) -> bool:
        if not self.config.endpoints.userinfo:
            return False
        if self.config.always_fetch_userinfo:
            return True
        missing = [name for name in required_claims(self.config) if claims.get(name) in (None, "")]
        if missing:
            logger.debug(f"ID token lacks {', '.join(sorted(missing))}; fetching userinfo")
        return bool(missing)

