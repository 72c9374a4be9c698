"""Shared constants and fakes for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qsl

import httpx

from oidcrp.core.oidc.client import TokenResponse
from oidcrp.core.oidc.identity import LocalIdentityRef, ResolvedIdentity

ISSUER = "https://idp.example.com"
CLIENT_ID = "test-client"
CLIENT_SECRET = "test-client-secret"
REDIRECT_URI = "https://rp.example.com/oidc/callback"
KEY_ID = "test-key"
SUBJECT = "user-123"

TokenFactory = Callable[..., str]


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeIdP:
    """Token and userinfo endpoints served through httpx.MockTransport."""

    def __init__(self, make_id_token: TokenFactory) -> None:
        self.make_id_token = make_id_token
        self.nonce: str | None = "test-nonce"
        self.id_token_claims: dict[str, Any] = {}
        self.token_status = 200
        self.token_body: dict[str, Any] | None = None
        self.token_exception: Exception | None = None
        self.userinfo_status = 200
        self.userinfo_body: dict[str, Any] = {"sub": SUBJECT, "email": "alice@example.com"}
        self.requests: list[httpx.Request] = []

    def form(self, index: int = -1) -> dict[str, str]:
        """Decoded form body of a recorded request."""
        return dict(parse_qsl(self.requests[index].content.decode()))

    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/token"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/token":
            if self.token_exception is not None:
                raise self.token_exception
            if self.token_body is not None:
                return httpx.Response(self.token_status, json=self.token_body)
            grant = dict(parse_qsl(request.content.decode())).get("grant_type")
            nonce = self.nonce if grant == "authorization_code" else None
            return httpx.Response(
                self.token_status,
                json={
                    "access_token": f"access-{len(self.requests)}",
                    "token_type": "Bearer",
                    "expires_in": 3600,
                    "refresh_token": f"refresh-{len(self.requests)}",
                    "id_token": self.make_id_token(nonce=nonce, **self.id_token_claims),
                },
            )

        if request.url.path == "/userinfo":
            return httpx.Response(self.userinfo_status, json=self.userinfo_body)

        return httpx.Response(404, json={"error": "not_found"})


class FakeHost:
    """In-memory host application accounts."""

    def __init__(self) -> None:
        self.accounts: dict[str, LocalIdentityRef] = {}
        self.created: list[ResolvedIdentity] = []
        self.updated: list[tuple[LocalIdentityRef, ResolvedIdentity]] = []
        self.tokens: dict[str, TokenResponse] = {}

    def add_account(self, subject_identity: str, account_id: str, linked: bool = True) -> LocalIdentityRef:
        ref = LocalIdentityRef(id=account_id, linked=linked)
        self.accounts[subject_identity] = ref
        return ref

    def find_local_identity(self, subject_identity: str) -> LocalIdentityRef | None:
        return self.accounts.get(subject_identity)

    def create_local_identity(self, identity: ResolvedIdentity) -> LocalIdentityRef:
        self.created.append(identity)
        return self.add_account(identity.subject_identity, f"local-{len(self.created)}")

    def update_local_identity(self, ref: LocalIdentityRef, identity: ResolvedIdentity) -> None:
        self.updated.append((ref, identity))
        self.accounts[identity.subject_identity] = LocalIdentityRef(id=ref.id, linked=True)

    def store_tokens(self, ref: LocalIdentityRef, tokens: TokenResponse) -> None:
        self.tokens[ref.id] = tokens

    def load_tokens(self, ref: LocalIdentityRef) -> TokenResponse | None:
        return self.tokens.get(ref.id)
