"""ID token validation.

A token moves through PARSED -> SIGNATURE_VERIFIED -> CLAIMS_VERIFIED ->
ACCEPTED. Any failure raises TokenValidationError naming the reason and the
last stage reached. There is no partial acceptance.
"""

from __future__ import annotations

import hmac
import logging
import ssl
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, NoReturn

import jwt
from jwt import PyJWK, PyJWKClient, PyJWKSet
from jwt.exceptions import PyJWKClientConnectionError, PyJWKClientError, PyJWKError, PyJWKSetError

from oidcrp.core.config import ClientConfig
from oidcrp.core.errors import (
    HttpError,
    HttpErrorKind,
    TokenValidationError,
    TokenValidationReason,
    ValidationStage,
)
from oidcrp.core.oidc.state import Clock, utc_now

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ("iss", "sub", "aud", "exp", "iat")


@dataclass(frozen=True)
class IdTokenClaims:
    """Verified claims of an accepted ID token."""

    iss: str
    sub: str
    aud: tuple[str, ...]
    exp: int
    iat: int
    nonce: str | None = None
    email: str | None = None
    name: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> IdTokenClaims:
        """Build from a verified payload."""
        aud = payload["aud"]
        return cls(
            iss=payload["iss"],
            sub=str(payload["sub"]),
            aud=tuple(aud) if isinstance(aud, list) else (aud,),
            exp=int(payload["exp"]),
            iat=int(payload["iat"]),
            nonce=payload.get("nonce"),
            email=payload.get("email"),
            name=payload.get("name"),
            raw=MappingProxyType(dict(payload)),
        )

    def as_dict(self) -> dict[str, Any]:
        """All claims as a mutable copy."""
        return dict(self.raw)


class JWKSManager:
    """Resolves signing keys from a static JWKS or a JWKS URI."""

    def __init__(
        self,
        jwks_uri: str | None = None,
        jwks: dict[str, Any] | None = None,
        timeout: float = 10.0,
        verify_tls: bool = True,
    ) -> None:
        """Initialize JWKS manager.

        Args:
            jwks_uri: URI to fetch JWKS from.
            jwks: Static JWKS document; takes precedence over jwks_uri.
            timeout: HTTP timeout in seconds.
            verify_tls: Whether to verify the JWKS endpoint certificate.
        """
        self.jwks_uri = jwks_uri
        self.timeout = timeout
        self.verify_tls = verify_tls
        self._key_set: PyJWKSet | None = PyJWKSet.from_dict(jwks) if jwks else None
        self._jwks_client: PyJWKClient | None = None

    def get_signing_key(self, token: str, kid: str | None) -> PyJWK:
        """Get the signing key for a token.

        Raises:
            PyJWKClientError: If no matching key exists.
            HttpError: If the JWKS endpoint cannot be reached.
        """
        if self._key_set is not None:
            return self._match_static_key(self._key_set, kid)

        if not self.jwks_uri:
            raise PyJWKClientError("No JWKS configured")

        if self._jwks_client is None:
            ssl_context = None
            if not self.verify_tls:
                ssl_context = ssl.create_default_context()
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
            self._jwks_client = PyJWKClient(self.jwks_uri, timeout=self.timeout, ssl_context=ssl_context)

        try:
            return self._jwks_client.get_signing_key_from_jwt(token)
        except PyJWKClientConnectionError as e:
            kind = HttpErrorKind.TIMEOUT if "timed out" in str(e).lower() else HttpErrorKind.CONNECTION_FAILED
            raise HttpError(kind, self.jwks_uri, str(e)) from e

    @staticmethod
    def _match_static_key(key_set: PyJWKSet, kid: str | None) -> PyJWK:
        keys = key_set.keys
        if kid is None:
            if len(keys) == 1:
                return keys[0]
            raise PyJWKClientError("Token has no 'kid' and the key set has several keys")
        for key in keys:
            if key.key_id == kid:
                return key
        raise PyJWKClientError(f"Unable to find a signing key that matches: '{kid}'")


class IdTokenValidator:
    """Validates ID tokens against a client configuration."""

    def __init__(
        self,
        config: ClientConfig,
        jwks_manager: JWKSManager | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.jwks_manager = jwks_manager or JWKSManager(
            jwks_uri=config.endpoints.jwks_uri or None,
            jwks=config.jwks,
            timeout=config.http_timeout,
            verify_tls=config.verify_tls,
        )
        self._clock = clock

    def validate(self, token: str, nonce: str) -> IdTokenClaims:
        """Fully validate an ID token from a code exchange.

        Args:
            token: Compact JWT.
            nonce: Nonce of the consumed authorization state.

        Returns:
            The accepted claims.

        Raises:
            TokenValidationError: On any failed check.
            HttpError: If signing keys could not be fetched.
        """
        header, payload = self._parse(token)
        self._verify_signature(token, header)
        self._verify_claims(payload)
        self._verify_nonce(payload, nonce)
        claims = IdTokenClaims.from_payload(payload)
        logger.debug(f"ID token accepted for sub={claims.sub} ({ValidationStage.ACCEPTED})")
        return claims

    def validate_refreshed(self, token: str, previous_sub: str | None) -> IdTokenClaims:
        """Validate an ID token returned by a refresh grant.

        The nonce is not required, but the subject must not change. With no
        previous subject known only the signature and claims are checked.
        """
        header, payload = self._parse(token)
        self._verify_signature(token, header)
        self._verify_claims(payload)
        if previous_sub is not None and str(payload["sub"]) != previous_sub:
            self._reject(
                TokenValidationReason.SUBJECT_MISMATCH,
                "Refreshed ID token has a different subject",
                ValidationStage.CLAIMS_VERIFIED,
            )
        return IdTokenClaims.from_payload(payload)

    def _reject(
        self,
        reason: TokenValidationReason,
        message: str,
        stage: ValidationStage | None,
    ) -> NoReturn:
        logger.error(f"ID token rejected: {reason.value}: {message}")
        raise TokenValidationError(reason, message, stage)

    def _parse(self, token: str) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split and decode the compact representation."""
        if not isinstance(token, str) or token.count(".") != 2:
            self._reject(TokenValidationReason.MALFORMED, "Expected three dot-separated segments", None)
        try:
            header = jwt.get_unverified_header(token)
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.exceptions.DecodeError as e:
            self._reject(TokenValidationReason.MALFORMED, f"Invalid JWT format: {e}", None)
        if not isinstance(payload, dict):
            self._reject(TokenValidationReason.MALFORMED, "Payload is not a JSON object", None)
        return header, payload

    def _verify_signature(self, token: str, header: dict[str, Any]) -> None:
        """Verify the signature with an allowed algorithm and a known key."""
        stage = ValidationStage.PARSED
        alg = header.get("alg")
        if not isinstance(alg, str) or alg.lower() == "none":
            self._reject(TokenValidationReason.BAD_SIGNATURE, "Unsigned tokens are never accepted", stage)
        if alg not in self.config.signing_algorithms:
            self._reject(TokenValidationReason.BAD_SIGNATURE, f"Algorithm '{alg}' is not allowed", stage)

        key: Any
        if alg.startswith("HS"):
            key = self.config.client_secret.encode("utf-8")
        else:
            try:
                key = self.jwks_manager.get_signing_key(token, header.get("kid")).key
            except (PyJWKClientError, PyJWKError, PyJWKSetError) as e:
                self._reject(TokenValidationReason.BAD_SIGNATURE, f"No matching signing key: {e}", stage)

        try:
            jwt.decode(
                token,
                key,
                algorithms=[alg],
                options={
                    "verify_signature": True,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_sub": False,
                    "verify_jti": False,
                },
            )
        except jwt.exceptions.InvalidSignatureError:
            self._reject(TokenValidationReason.BAD_SIGNATURE, "Signature verification failed", stage)
        except (jwt.exceptions.PyJWTError, TypeError, ValueError) as e:
            self._reject(TokenValidationReason.BAD_SIGNATURE, f"Key does not match algorithm '{alg}': {e}", stage)

    def _verify_claims(self, payload: dict[str, Any]) -> None:
        """Check the required standard claims."""
        stage = ValidationStage.SIGNATURE_VERIFIED
        now = self._clock().timestamp()
        skew = self.config.clock_skew

        missing = [name for name in REQUIRED_CLAIMS if payload.get(name) in (None, "", [])]
        if missing:
            self._reject(TokenValidationReason.MISSING_CLAIM, f"Missing claims: {', '.join(missing)}", stage)

        for name in ("exp", "iat"):
            value = payload[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                self._reject(TokenValidationReason.MALFORMED, f"Claim '{name}' is not numeric", stage)

        if payload["iss"] != self.config.issuer:
            self._reject(
                TokenValidationReason.INVALID_ISSUER,
                f"Expected '{self.config.issuer}', got '{payload['iss']}'",
                stage,
            )

        aud = payload["aud"]
        audiences = aud if isinstance(aud, list) else [aud]
        if self.config.client_id not in audiences:
            self._reject(TokenValidationReason.INVALID_AUDIENCE, "Client is not an audience of the token", stage)
        azp = payload.get("azp")
        if len(audiences) > 1 and azp is not None and azp != self.config.client_id:
            self._reject(TokenValidationReason.INVALID_AUDIENCE, "Authorized party is another client", stage)

        if now > payload["exp"] + skew:
            self._reject(TokenValidationReason.EXPIRED, "Token has expired", stage)

        if payload["iat"] > now + skew:
            self._reject(TokenValidationReason.ISSUED_IN_FUTURE, "Token issued in the future", stage)

    def _verify_nonce(self, payload: dict[str, Any], expected: str) -> None:
        """Compare the token nonce with the state nonce, byte for byte."""
        stage = ValidationStage.CLAIMS_VERIFIED
        token_nonce = payload.get("nonce")
        if not isinstance(token_nonce, str) or not expected:
            self._reject(TokenValidationReason.NONCE_MISMATCH, "Nonce missing", stage)
        if not hmac.compare_digest(token_nonce.encode("utf-8"), expected.encode("utf-8")):
            self._reject(TokenValidationReason.NONCE_MISMATCH, "Nonce does not match the request", stage)


def check_userinfo_subject(claims: IdTokenClaims, userinfo: Mapping[str, Any]) -> None:
    """Ensure userinfo describes the same subject as the ID token.

    Raises:
        TokenValidationError: SUBJECT_MISMATCH if the subjects differ.
    """
    sub = userinfo.get("sub")
    if sub is None or str(sub) != claims.sub:
        logger.error("UserInfo subject does not match ID token subject")
        raise TokenValidationError(
            TokenValidationReason.SUBJECT_MISMATCH,
            "UserInfo subject does not match ID token subject",
            ValidationStage.ACCEPTED,
        )

