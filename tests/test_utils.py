"""Tests for OIDC utility functions."""

import jwt

from oidcrp.core.oidc.utils import decode_jwt, merge_claims


class TestDecodeJwt:
    """Tests for unverified JWT inspection."""

    def test_decode_signed_token(self):
        """A signed token decodes into header, payload and signature."""
        token = jwt.encode({"sub": "user-1", "iss": "https://idp"}, "x" * 32, algorithm="HS256")

        decoded = decode_jwt(token)

        assert decoded.is_valid_format
        assert decoded.header["alg"] == "HS256"
        assert decoded.subject == "user-1"
        assert decoded.signature

    def test_wrong_part_count(self):
        """A token without three parts is flagged as invalid."""
        decoded = decode_jwt("only.two")

        assert not decoded.is_valid_format
        assert "expected 3 parts" in (decoded.error or "")
        assert decoded.subject is None

    def test_payload_not_json(self):
        """A payload that is not JSON is flagged as invalid."""
        decoded = decode_jwt("e30.bm90LWpzb24.sig")

        assert not decoded.is_valid_format
        assert decoded.error


class TestMergeClaims:
    """Tests for merge_claims."""

    def test_userinfo_overrides(self):
        """UserInfo values override ID token values."""
        merged = merge_claims({"sub": "1", "email": "old@example.com"}, {"email": "new@example.com", "name": "Alice"})

        assert merged == {"sub": "1", "email": "new@example.com", "name": "Alice"}

    def test_without_userinfo(self):
        """Without userinfo a copy of the ID token claims is returned."""
        claims = {"sub": "1"}

        merged = merge_claims(claims)

        assert merged == claims
        assert merged is not claims
