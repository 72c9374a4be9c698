"""OIDC utility functions.

Helpers for inspecting JWTs without verification and for combining
ID token claims with userinfo claims.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass
class DecodedToken:
    """Represents a decoded, unverified JWT."""

    header: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    signature: str = ""

    is_valid_format: bool = True
    error: str | None = None

    @property
    def subject(self) -> str | None:
        """Get the sub claim."""
        sub = self.payload.get("sub")
        return str(sub) if sub is not None else None


def decode_jwt(token: str) -> DecodedToken:
    """Decode a JWT token without verification.

    This decodes the token for inspection purposes only.
    It does NOT verify the signature.

    Args:
        token: JWT token string.

    Returns:
        DecodedToken with header and payload.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return DecodedToken(
            is_valid_format=False,
            error=f"Invalid JWT format: expected 3 parts, got {len(parts)}",
        )

    try:
        header = _decode_base64url(parts[0])
        payload = _decode_base64url(parts[1])
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        return DecodedToken(
            is_valid_format=False,
            error=f"Failed to decode JWT: {e}",
        )

    return DecodedToken(header=header, payload=payload, signature=parts[2])


def _decode_base64url(data: str) -> dict[str, Any]:
    """Decode base64url-encoded JSON object."""
    padding = 4 - len(data) % 4
    if padding != 4:
        data += "=" * padding

    result = json.loads(base64.urlsafe_b64decode(data))
    if not isinstance(result, dict):
        raise ValueError("JWT segment is not a JSON object")
    return result


def merge_claims(
    id_token_claims: Mapping[str, Any],
    userinfo_claims: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Combine ID token claims with userinfo claims.

    Userinfo values override ID token values for matching keys; keys present
    in only one source are kept as they are.
    """
    merged = dict(id_token_claims)
    if userinfo_claims:
        merged.update(userinfo_claims)
    return merged
