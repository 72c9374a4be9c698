"""Session token refresh.

Keeps an authenticated session's access token fresh by using the refresh
token shortly before expiry, and reports when the session has to end.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum

from oidcrp.core.config import ClientConfig
from oidcrp.core.errors import HttpError, OAuthError, OIDCError, TokenValidationError
from oidcrp.core.oidc.client import TokenClient, TokenResponse
from oidcrp.core.oidc.identity import IdentityHost, LocalIdentityRef
from oidcrp.core.oidc.state import Clock, utc_now
from oidcrp.core.oidc.utils import decode_jwt
from oidcrp.core.oidc.validation import IdTokenValidator

logger = logging.getLogger(__name__)


class RefreshStatus(StrEnum):
    """Outcome of a refresh check."""

    OK = "ok"
    REFRESHED = "refreshed"
    SESSION_EXPIRED = "session_expired"


@dataclass
class RefreshResult:
    """Result of SessionManager.refresh_if_needed."""

    status: RefreshStatus
    tokens: TokenResponse | None = None
    error: OIDCError | None = None

    @property
    def session_valid(self) -> bool:
        return self.status != RefreshStatus.SESSION_EXPIRED


class SessionManager:
    """Refreshes stored tokens for authenticated sessions."""

    def __init__(
        self,
        config: ClientConfig,
        host: IdentityHost,
        token_client: TokenClient | None = None,
        validator: IdTokenValidator | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the session manager.

        Args:
            config: Client configuration with refresh settings.
            host: Host providing load_tokens/store_tokens.
            token_client: Client for the token endpoint.
            validator: Validator for ID tokens returned by a refresh.
            clock: Source of the current time.
        """
        self.config = config
        self.host = host
        self.token_client = token_client or TokenClient(config)
        self.validator = validator or IdTokenValidator(config, clock=clock)
        self._clock = clock

    def needs_refresh(self, tokens: TokenResponse, now: datetime | None = None) -> bool:
        """Check if the access token is within the refresh margin of expiry.

        Tokens without a known lifetime are never refreshed proactively.
        """
        expires_at = tokens.expires_at
        if expires_at is None:
            return False
        current = (now or self._clock()).timestamp()
        return expires_at - current < self.config.refresh_margin

    def is_expired(self, tokens: TokenResponse, now: datetime | None = None) -> bool:
        """Check if the access token lifetime has fully elapsed."""
        expires_at = tokens.expires_at
        if expires_at is None:
            return False
        return (now or self._clock()).timestamp() >= expires_at

    def refresh_if_needed(self, ref: LocalIdentityRef) -> RefreshResult:
        """Refresh the session's tokens if they are close to expiry.

        Args:
            ref: The local account whose session is checked.

        Returns:
            RefreshResult. SESSION_EXPIRED means the host must end the
            session; it is never raised.
        """
        tokens = self.host.load_tokens(ref)
        if tokens is None:
            logger.info(f"No stored tokens for account {ref.id}; session expired")
            return RefreshResult(RefreshStatus.SESSION_EXPIRED)

        now = self._clock()
        if not self.needs_refresh(tokens, now):
            return RefreshResult(RefreshStatus.OK, tokens)

        if not self.config.token_refresh_enable or not tokens.refresh_token:
            if self.is_expired(tokens, now):
                logger.info(f"Access token expired for account {ref.id} and cannot be refreshed")
                return RefreshResult(RefreshStatus.SESSION_EXPIRED, tokens)
            return RefreshResult(RefreshStatus.OK, tokens)

        last_error: OIDCError | None = None
        for attempt in range(1, self.config.refresh_attempts + 1):
            try:
                refreshed = self.token_client.refresh(tokens.refresh_token)
                break
            except HttpError as e:
                logger.warning(f"Token refresh attempt {attempt} failed: {e}")
                last_error = e
            except OAuthError as e:
                logger.warning(f"Token refresh rejected by IdP: {e}")
                return RefreshResult(RefreshStatus.SESSION_EXPIRED, tokens, e)
        else:
            logger.warning(f"Token refresh gave up after {self.config.refresh_attempts} attempts")
            return RefreshResult(RefreshStatus.SESSION_EXPIRED, tokens, last_error)

        if not refreshed.refresh_token:
            refreshed = replace(refreshed, refresh_token=tokens.refresh_token)

        if refreshed.id_token:
            previous_sub = decode_jwt(tokens.id_token).subject if tokens.id_token else None
            try:
                self.validator.validate_refreshed(refreshed.id_token, previous_sub)
            except (TokenValidationError, HttpError) as e:
                logger.warning(f"Refreshed ID token not accepted: {e}")
                return RefreshResult(RefreshStatus.SESSION_EXPIRED, tokens, e)
        elif tokens.id_token:
            refreshed = replace(refreshed, id_token=tokens.id_token)

        self.host.store_tokens(ref, refreshed)
        logger.debug(f"Refreshed tokens for account {ref.id}")
        return RefreshResult(RefreshStatus.REFRESHED, refreshed)
