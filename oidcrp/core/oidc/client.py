"""Token endpoint client.

Builds the authorization redirect and performs the server-to-server calls
of the Authorization Code flow: code exchange, refresh and userinfo.
Transport failures surface as HttpError, IdP errors as OAuthError.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import ssl
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx

from oidcrp.core.config import ClientConfig
from oidcrp.core.errors import HttpError, HttpErrorKind, OAuthError
from oidcrp.core.logging import LoggingClient, ProtocolLogger, get_protocol_logger
from oidcrp.core.oidc.state import AuthRequestState


def generate_code_verifier(length: int = 64) -> str:
    """Generate a PKCE code verifier.

    The code verifier is a high-entropy cryptographic random string
    between 43 and 128 characters, using unreserved URI characters.

    Args:
        length: Length of the verifier (43-128, default 64).

    Returns:
        URL-safe base64-encoded random string.
    """
    # Clamp length to valid range per RFC 7636
    length = max(43, min(128, length))
    num_bytes = (length * 3) // 4 + 1
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).decode("ascii")
    return verifier.rstrip("=")[:length]


def generate_code_challenge(code_verifier: str) -> str:
    """Generate an S256 PKCE code challenge from a code verifier."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass
class AuthorizationRequest:
    """An authorization redirect ready to send to the browser."""

    authorization_url: str
    state: AuthRequestState


@dataclass
class TokenResponse:
    """Represents an OAuth2 token response."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None

    # Unix time at which the response was received
    issued_at: float = field(default_factory=time.time)

    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> float | None:
        """Unix time the access token expires, if the IdP said."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    @classmethod
    def from_response(cls, data: dict[str, Any], issued_at: float | None = None) -> TokenResponse:
        """Build from a token endpoint JSON body."""
        expires_in = data.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None

        return cls(
            access_token=data.get("access_token", ""),
            token_type=data.get("token_type", "Bearer"),
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            scope=data.get("scope"),
            issued_at=issued_at if issued_at is not None else time.time(),
            raw_response=data,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for host storage."""
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "id_token": self.id_token,
            "scope": self.scope,
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenResponse:
        """Reconstruct from dictionary."""
        return cls(
            access_token=data.get("access_token", ""),
            token_type=data.get("token_type", "Bearer"),
            expires_in=data.get("expires_in"),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            scope=data.get("scope"),
            issued_at=float(data.get("issued_at", 0.0)),
        )


def classify_transport_error(error: httpx.TransportError) -> HttpErrorKind:
    """Map an httpx transport error onto the HttpError kinds."""
    if isinstance(error, httpx.TimeoutException):
        return HttpErrorKind.TIMEOUT

    cause: BaseException | None = error
    while cause is not None:
        if isinstance(cause, ssl.SSLError):
            return HttpErrorKind.TLS_ERROR
        cause = cause.__cause__ or cause.__context__
    text = str(error).upper()
    if "SSL" in text or "CERTIFICATE" in text or "TLS" in text:
        return HttpErrorKind.TLS_ERROR
    return HttpErrorKind.CONNECTION_FAILED


class TokenClient:
    """Client for the IdP authorization, token and userinfo endpoints."""

    def __init__(
        self,
        config: ClientConfig,
        http_client: httpx.Client | None = None,
        protocol_logger: ProtocolLogger | None = None,
    ) -> None:
        """Initialize the token client.

        Args:
            config: Client configuration with endpoints and credentials.
            http_client: Optional preconfigured httpx client (tests pass one
                with a MockTransport). Created lazily otherwise.
            protocol_logger: Optional protocol logger for HTTP traffic capture.
        """
        self.config = config
        self._protocol_logger = protocol_logger or get_protocol_logger()
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.Client:
        """Get or create HTTP client with logging."""
        if self._http_client is None:
            self._http_client = LoggingClient(
                protocol_logger=self._protocol_logger,
                timeout=self.config.http_timeout,
                verify=self.config.verify_tls,
            )
        return self._http_client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def authorization_url(
        self,
        state: AuthRequestState,
        prompt: str | None = None,
        login_hint: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the authorize endpoint URL for a state.

        Args:
            state: Issued state; its value and nonce are sent to the IdP.
            prompt: OIDC prompt parameter (none, login, consent, select_account).
            login_hint: OIDC login_hint parameter.
            extra_params: Additional query parameters.

        Returns:
            The URL to redirect the browser to.
        """
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": self.config.scope,
            "state": state.value,
            "nonce": state.nonce,
        }

        if state.code_verifier:
            params["code_challenge"] = generate_code_challenge(state.code_verifier)
            params["code_challenge_method"] = "S256"

        if prompt:
            params["prompt"] = prompt

        if login_hint:
            params["login_hint"] = login_hint

        if extra_params:
            params.update(extra_params)

        endpoint = self.config.endpoints.authorize
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    def exchange_code(
        self,
        code: str,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback.
            redirect_uri: Redirect URI used in the authorization request.
            code_verifier: PKCE code verifier, if PKCE was used.

        Returns:
            TokenResponse with access token, id token, etc.

        Raises:
            OAuthError: If the IdP returns an error.
            HttpError: On timeout or connection/TLS failure.
        """
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.config.redirect_uri,
            "client_id": self.config.client_id,
        }

        if self.config.client_secret:
            data["client_secret"] = self.config.client_secret

        if code_verifier:
            data["code_verifier"] = code_verifier

        return self._token_request(data)

    def refresh(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for new tokens.

        A failure here means the session must be treated as expired.

        Raises:
            OAuthError: If the IdP returns an error.
            HttpError: On timeout or connection/TLS failure.
        """
        data: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }

        if self.config.client_secret:
            data["client_secret"] = self.config.client_secret

        return self._token_request(data)

    def fetch_userinfo(self, access_token: str) -> dict[str, Any]:
        """Fetch user claims from the userinfo endpoint.

        Args:
            access_token: Bearer token for authorization.

        Returns:
            Claims returned by the endpoint.

        Raises:
            OAuthError: If the endpoint is not configured or answers with an error.
            HttpError: On timeout or connection/TLS failure.
        """
        endpoint = self.config.endpoints.userinfo
        if not endpoint:
            raise OAuthError("no_endpoint", "UserInfo endpoint not configured")

        response = self._send(
            "GET",
            endpoint,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )

        if response.status_code != 200:
            body = _json_or_none(response)
            if body and "error" in body:
                raise OAuthError(body["error"], body.get("error_description"), response.status_code)
            www_authenticate = response.headers.get("www-authenticate", "")
            raise OAuthError(
                "userinfo_error",
                www_authenticate or f"UserInfo request failed with status {response.status_code}",
                response.status_code,
            )

        claims = _json_or_none(response)
        if claims is None:
            raise OAuthError("invalid_userinfo_response", "UserInfo response is not a JSON object")
        return claims

    def end_session_url(
        self,
        id_token_hint: str | None = None,
        post_logout_redirect_uri: str | None = None,
    ) -> str | None:
        """Build the RP-initiated logout URL, or None without an end_session endpoint."""
        endpoint = self.config.endpoints.end_session
        if not endpoint:
            return None

        params: dict[str, str] = {"client_id": self.config.client_id}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        if post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = post_logout_redirect_uri

        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    def _token_request(self, data: dict[str, str]) -> TokenResponse:
        """POST to the token endpoint and parse the response."""
        response = self._send(
            "POST",
            self.config.endpoints.token,
            data=data,
            headers={"Accept": "application/json"},
        )
        received_at = time.time()
        body = _json_or_none(response)

        if not response.is_success:
            if body and "error" in body:
                raise OAuthError(body["error"], body.get("error_description"), response.status_code)
            raise OAuthError(
                "token_error",
                f"Token request failed with status {response.status_code}",
                response.status_code,
            )

        if body is None:
            raise OAuthError("invalid_token_response", "Token response is not a JSON object")

        if "error" in body:
            raise OAuthError(body["error"], body.get("error_description"), response.status_code)

        if not body.get("access_token"):
            raise OAuthError("invalid_token_response", "Token response has no access_token")

        return TokenResponse.from_response(body, issued_at=received_at)

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, converting transport failures to HttpError."""
        try:
            return self.http_client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise HttpError(classify_transport_error(e), url, str(e)) from e


def _json_or_none(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None
