"""Error taxonomy for the relying party.

Every failure in a login or refresh attempt is raised as a subclass of
OIDCError. ``str(error)`` carries the full detail for logs, while
``user_message`` is a sanitized text that is safe to show an end user.
"""

from __future__ import annotations

from enum import StrEnum


class OIDCError(Exception):
    """Base exception for relying party errors."""

    user_message = "Login failed. Please try again."


class ConfigError(OIDCError):
    """Raised when client configuration is missing or malformed."""

    user_message = "Single sign-on is not configured correctly."


class StateErrorReason(StrEnum):
    """Why an authorization state could not be redeemed."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class StateError(OIDCError):
    """Raised when a callback state is unknown, already used, or expired."""

    user_message = "Your login session has expired or is invalid. Please start again."

    def __init__(self, reason: StateErrorReason, correlation_id: str = "") -> None:
        self.reason = reason
        self.correlation_id = correlation_id
        super().__init__(f"State {reason.value} (correlation_id={correlation_id or '-'})")


class HttpErrorKind(StrEnum):
    """Transport level failure kinds."""

    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection_failed"
    TLS_ERROR = "tls_error"


class HttpError(OIDCError):
    """Raised when an outbound request to the IdP fails at the transport level."""

    user_message = "The identity provider could not be reached. Please try again."

    def __init__(self, kind: HttpErrorKind, url: str, detail: str = "") -> None:
        self.kind = kind
        self.url = url
        self.detail = detail
        super().__init__(f"HTTP {kind.value} calling {url}: {detail}")


class OAuthError(OIDCError):
    """Raised when the IdP answers with an OAuth2 error."""

    def __init__(
        self,
        code: str,
        description: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.description = description
        self.status_code = status_code
        message = f"OAuth error '{code}'"
        if description:
            message += f": {description}"
        if status_code is not None:
            message += f" (HTTP {status_code})"
        super().__init__(message)

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"The identity provider rejected the login ({self.code})."


class TokenValidationReason(StrEnum):
    """Why an ID token was rejected."""

    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    MISSING_CLAIM = "missing_claim"
    INVALID_ISSUER = "invalid_issuer"
    INVALID_AUDIENCE = "invalid_audience"
    EXPIRED = "expired"
    ISSUED_IN_FUTURE = "issued_in_future"
    NONCE_MISMATCH = "nonce_mismatch"
    SUBJECT_MISMATCH = "subject_mismatch"


class ValidationStage(StrEnum):
    """Stages of ID token validation, in order."""

    PARSED = "parsed"
    SIGNATURE_VERIFIED = "signature_verified"
    CLAIMS_VERIFIED = "claims_verified"
    ACCEPTED = "accepted"


class TokenValidationError(OIDCError):
    """Raised when an ID token fails validation. Always fatal to the attempt."""

    def __init__(
        self,
        reason: TokenValidationReason,
        message: str = "",
        stage: ValidationStage | None = None,
    ) -> None:
        self.reason = reason
        self.stage = stage
        detail = f"ID token rejected ({reason.value})"
        if message:
            detail += f": {message}"
        super().__init__(detail)


class IdentityRejectReason(StrEnum):
    """Why identity resolution refused the login."""

    USER_NOT_FOUND = "user_not_found"
    USER_NOT_LINKED = "user_not_linked"
    MISSING_IDENTITY_CLAIM = "missing_identity_claim"
    TEMPLATE_ERROR = "template_error"
    LOGIN_DENIED = "login_denied"
    CREATION_DENIED = "creation_denied"


_IDENTITY_MESSAGES = {
    IdentityRejectReason.USER_NOT_FOUND: "No local account exists for this identity and sign-up is disabled.",
    IdentityRejectReason.USER_NOT_LINKED: "A local account exists but linking to single sign-on is disabled.",
    IdentityRejectReason.MISSING_IDENTITY_CLAIM: "The identity provider did not return the required user information.",
    IdentityRejectReason.TEMPLATE_ERROR: "User information could not be formatted. Check the identity settings.",
    IdentityRejectReason.LOGIN_DENIED: "This account is not allowed to log in.",
    IdentityRejectReason.CREATION_DENIED: "This account is not allowed to be created.",
}


class IdentityPolicyError(OIDCError):
    """Raised when the resolved identity action is REJECT."""

    def __init__(self, reason: IdentityRejectReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = f"Identity rejected ({reason.value})"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return _IDENTITY_MESSAGES[self.reason]
