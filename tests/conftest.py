"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Generator
from typing import Any

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from flask import Flask
from flask.testing import FlaskClient
from jwt.algorithms import RSAAlgorithm

from oidcrp.core import logging as protocol_logging
from oidcrp.core.config import ClientConfig, Endpoints
from oidcrp.core.logging import LoggingClient
from oidcrp.core.oidc.client import TokenClient
from oidcrp.core.oidc.flows import AuthorizationCodeFlow
from oidcrp.core.oidc.state import InMemoryStateStore
from tests.helpers import (
    CLIENT_ID,
    CLIENT_SECRET,
    ISSUER,
    KEY_ID,
    REDIRECT_URI,
    SUBJECT,
    FakeHost,
    FakeIdP,
    FrozenClock,
    TokenFactory,
)


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep logging configuration from leaking between tests."""
    monkeypatch.setattr(protocol_logging, "_global_logger", None)
    package_logger = logging.getLogger("oidcrp")
    level, handlers = package_logger.level, list(package_logger.handlers)
    yield
    for handler in package_logger.handlers:
        if handler not in handlers:
            handler.close()
    package_logger.setLevel(level)
    package_logger.handlers[:] = handlers


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    """RSA key the fake IdP signs ID tokens with."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key() -> rsa.RSAPrivateKey:
    """RSA key unknown to the relying party."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_private_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    """Public key set of the fake IdP."""
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_private_key.public_key()))
    jwk.update({"kid": KEY_ID, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


@pytest.fixture
def make_id_token(rsa_private_key: rsa.RSAPrivateKey) -> TokenFactory:
    """Build signed ID tokens.

    Keyword arguments override claims; a value of None removes the claim.
    """

    def factory(
        key: Any = None,
        algorithm: str = "RS256",
        headers: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "sub": SUBJECT,
            "aud": CLIENT_ID,
            "iat": now,
            "exp": now + 300,
            "nonce": "test-nonce",
            "email": "alice@example.com",
            "name": "Alice Example",
            "preferred_username": "alice",
        }
        claims.update(overrides)
        claims = {name: value for name, value in claims.items() if value is not None}
        return jwt.encode(
            claims,
            key if key is not None else rsa_private_key,
            algorithm=algorithm,
            headers={"kid": KEY_ID, **(headers or {})},
        )

    return factory


@pytest.fixture
def client_config(jwks: dict[str, Any]) -> ClientConfig:
    """Complete client configuration pointing at the fake IdP."""
    return ClientConfig(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        issuer=ISSUER,
        redirect_uri=REDIRECT_URI,
        endpoints=Endpoints(
            authorize=f"{ISSUER}/authorize",
            token=f"{ISSUER}/token",
            userinfo=f"{ISSUER}/userinfo",
            end_session=f"{ISSUER}/logout",
            jwks_uri=f"{ISSUER}/jwks",
        ),
        jwks=jwks,
    )


@pytest.fixture
def idp(make_id_token: TokenFactory) -> FakeIdP:
    return FakeIdP(make_id_token)


@pytest.fixture
def token_client(client_config: ClientConfig, idp: FakeIdP) -> Generator[TokenClient, None, None]:
    """TokenClient whose HTTP traffic goes to the fake IdP."""
    http_client = LoggingClient(transport=httpx.MockTransport(idp.handler))
    client = TokenClient(client_config, http_client=http_client)
    yield client
    client.close()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def flow(
    client_config: ClientConfig,
    state_store: InMemoryStateStore,
    host: FakeHost,
    token_client: TokenClient,
) -> AuthorizationCodeFlow:
    return AuthorizationCodeFlow(client_config, state_store, host, token_client=token_client)


@pytest.fixture
def app(
    client_config: ClientConfig,
    state_store: InMemoryStateStore,
    host: FakeHost,
    token_client: TokenClient,
) -> Generator[Flask, None, None]:
    """Create application for testing against the fake IdP."""
    from oidcrp.app import create_app

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
        },
        host=host,
        client_config=client_config,
        state_store=state_store,
        token_client=token_client,
    )
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
