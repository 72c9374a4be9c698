"""Tests for the Authorization Code login flow."""

from dataclasses import replace
from urllib.parse import parse_qs, urlsplit

import pytest

from oidcrp.core.config import ClientConfig
from oidcrp.core.errors import (
    ConfigError,
    IdentityPolicyError,
    IdentityRejectReason,
    OAuthError,
    StateError,
    StateErrorReason,
    TokenValidationError,
    TokenValidationReason,
)
from oidcrp.core.oidc.client import TokenClient
from oidcrp.core.oidc.flows import AuthorizationCodeFlow
from oidcrp.core.oidc.identity import IdentityAction, LocalIdentityRef
from oidcrp.core.oidc.state import InMemoryStateStore
from tests.helpers import SUBJECT, FakeHost, FakeIdP, FrozenClock


def _params(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _start(flow: AuthorizationCodeFlow, idp: FakeIdP, **kwargs) -> dict[str, str]:
    """Begin a login and have the fake IdP sign the matching nonce."""
    request = flow.begin_login(**kwargs)
    idp.nonce = request.state.nonce
    return _params(request.authorization_url)


def _make_flow(
    config: ClientConfig,
    host: FakeHost,
    token_client: TokenClient,
    state_store: InMemoryStateStore | None = None,
) -> AuthorizationCodeFlow:
    if state_store is None:
        state_store = InMemoryStateStore()
    return AuthorizationCodeFlow(config, state_store, host, token_client=token_client)


class TestBeginLogin:
    """Tests for starting a login."""

    def test_issues_state(self, flow: AuthorizationCodeFlow, state_store: InMemoryStateStore) -> None:
        """The authorization URL carries the issued state and nonce."""
        request = flow.begin_login()

        params = _params(request.authorization_url)
        assert params["state"] == request.state.value
        assert params["nonce"] == request.state.nonce
        assert len(state_store) == 1

    def test_redirect_to_dropped_by_default(self, flow: AuthorizationCodeFlow) -> None:
        """redirect_to is not stored unless redirect_user_back is on."""
        request = flow.begin_login(redirect_to="/reports")
        assert request.state.redirect_to is None

    def test_pkce(
        self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient, idp: FakeIdP
    ) -> None:
        """PKCE sends an S256 challenge and the verifier at exchange time."""
        flow = _make_flow(replace(client_config, use_pkce=True), host, token_client)

        params = _start(flow, idp)

        assert params["code_challenge_method"] == "S256"
        flow.handle_callback({"state": params["state"], "code": "auth-code"})
        assert len(idp.form()["code_verifier"]) >= 43

    def test_url_decorator(self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient) -> None:
        """url_decorator can add parameters to the authorization URL."""
        config = replace(client_config, url_decorator=lambda url: f"{url}&kc_idp_hint=corp")
        flow = _make_flow(config, host, token_client)

        request = flow.begin_login()

        assert _params(request.authorization_url)["kc_idp_hint"] == "corp"

    def test_invalid_config_rejected(self, host: FakeHost) -> None:
        """An incomplete configuration fails at construction."""
        with pytest.raises(ConfigError):
            AuthorizationCodeFlow(ClientConfig(client_id="x"), InMemoryStateStore(), host)


class TestHandleCallback:
    """Tests for processing the IdP callback."""

    def test_new_user_created(self, flow: AuthorizationCodeFlow, idp: FakeIdP, host: FakeHost) -> None:
        """A first login creates an account and stores its tokens."""
        params = _start(flow, idp)

        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})
        ref = flow.complete_login(result)

        assert result.identity.action == IdentityAction.CREATE
        assert result.claims.sub == SUBJECT
        assert idp.form()["code"] == "auth-code"
        assert ref.id == "local-1"
        assert host.created[0].email == "alice@example.com"
        assert host.tokens["local-1"] is result.tokens

    def test_existing_user_logged_in(self, flow: AuthorizationCodeFlow, idp: FakeIdP, host: FakeHost) -> None:
        """A linked account logs in without being recreated."""
        existing = host.add_account("alice@example.com", "7")
        params = _start(flow, idp)

        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})
        ref = flow.complete_login(result)

        assert result.identity.action == IdentityAction.LOGIN
        assert ref == existing
        assert host.created == []
        assert host.updated[0][0] == existing

    def test_unlinked_user_linked(self, flow: AuthorizationCodeFlow, idp: FakeIdP, host: FakeHost) -> None:
        """An unlinked account is linked on login."""
        host.add_account("alice@example.com", "7", linked=False)
        params = _start(flow, idp)

        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})
        flow.complete_login(result)

        assert result.identity.action == IdentityAction.LINK
        assert host.accounts["alice@example.com"] == LocalIdentityRef("7", linked=True)

    def test_idp_error_leaves_state(
        self, flow: AuthorizationCodeFlow, idp: FakeIdP, state_store: InMemoryStateStore
    ) -> None:
        """An IdP error raises OAuthError and leaves the state unconsumed."""
        params = _start(flow, idp)

        with pytest.raises(OAuthError) as exc_info:
            flow.handle_callback({"state": params["state"], "error": "access_denied"})

        assert exc_info.value.code == "access_denied"
        assert len(state_store) == 1
        assert idp.requests == []

    def test_missing_state(self, flow: AuthorizationCodeFlow) -> None:
        """A callback without state is NOT_FOUND."""
        with pytest.raises(StateError) as exc_info:
            flow.handle_callback({"code": "auth-code"})

        assert exc_info.value.reason == StateErrorReason.NOT_FOUND

    def test_missing_code_keeps_state(
        self, flow: AuthorizationCodeFlow, idp: FakeIdP, state_store: InMemoryStateStore
    ) -> None:
        """A callback without code raises before the state is consumed."""
        params = _start(flow, idp)

        with pytest.raises(OAuthError) as exc_info:
            flow.handle_callback({"state": params["state"]})

        assert exc_info.value.code == "invalid_request"
        assert len(state_store) == 1

    def test_replayed_callback(self, flow: AuthorizationCodeFlow, idp: FakeIdP) -> None:
        """A second callback with the same state is refused."""
        params = _start(flow, idp)
        callback = {"state": params["state"], "code": "auth-code"}
        flow.handle_callback(callback)

        with pytest.raises(StateError) as exc_info:
            flow.handle_callback(callback)

        assert exc_info.value.reason == StateErrorReason.NOT_FOUND
        assert len(idp.token_requests()) == 1

    def test_failed_exchange_consumes_state(
        self, flow: AuthorizationCodeFlow, idp: FakeIdP, state_store: InMemoryStateStore
    ) -> None:
        """A failed code exchange still consumes the state."""
        params = _start(flow, idp)
        idp.token_status = 400
        idp.token_body = {"error": "invalid_grant"}

        with pytest.raises(OAuthError):
            flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert len(state_store) == 0

    def test_expired_state(
        self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient, idp: FakeIdP
    ) -> None:
        """A state older than state_ttl is EXPIRED."""
        clock = FrozenClock()
        flow = _make_flow(client_config, host, token_client, InMemoryStateStore(clock=clock))
        params = _start(flow, idp)
        clock.advance(client_config.state_ttl + 1)

        with pytest.raises(StateError) as exc_info:
            flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert exc_info.value.reason == StateErrorReason.EXPIRED
        assert idp.requests == []

    def test_nonce_mismatch(self, flow: AuthorizationCodeFlow, idp: FakeIdP) -> None:
        """An ID token for another login's nonce is rejected."""
        params = _start(flow, idp)
        idp.nonce = "nonce-from-another-login"

        with pytest.raises(TokenValidationError) as exc_info:
            flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert exc_info.value.reason == TokenValidationReason.NONCE_MISMATCH

    def test_missing_id_token(self, flow: AuthorizationCodeFlow, idp: FakeIdP) -> None:
        """A token response without id_token is rejected."""
        params = _start(flow, idp)
        idp.token_body = {"access_token": "abc", "token_type": "Bearer"}

        with pytest.raises(TokenValidationError) as exc_info:
            flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert exc_info.value.reason == TokenValidationReason.MALFORMED

    def test_userinfo_fetched_for_missing_claim(self, flow: AuthorizationCodeFlow, idp: FakeIdP) -> None:
        """UserInfo fills a claim the ID token lacks."""
        idp.id_token_claims = {"email": None}
        idp.userinfo_body = {"sub": SUBJECT, "email": "alice@userinfo.example"}
        params = _start(flow, idp)

        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert result.identity.subject_identity == "alice@userinfo.example"
        assert idp.requests[-1].url.path == "/userinfo"

    def test_userinfo_skipped_when_claims_present(self, flow: AuthorizationCodeFlow, idp: FakeIdP) -> None:
        """UserInfo is not fetched when the ID token has every needed claim."""
        params = _start(flow, idp)

        flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert [r.url.path for r in idp.requests] == ["/token"]

    def test_userinfo_subject_mismatch(self, flow: AuthorizationCodeFlow, idp: FakeIdP) -> None:
        """A userinfo sub different from the ID token's is rejected."""
        idp.id_token_claims = {"email": None}
        idp.userinfo_body = {"sub": "someone-else", "email": "mallory@example.com"}
        params = _start(flow, idp)

        with pytest.raises(TokenValidationError) as exc_info:
            flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert exc_info.value.reason == TokenValidationReason.SUBJECT_MISMATCH

    def test_always_fetch_userinfo(
        self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient, idp: FakeIdP
    ) -> None:
        """always_fetch_userinfo merges userinfo claims on every login."""
        flow = _make_flow(replace(client_config, always_fetch_userinfo=True), host, token_client)
        idp.userinfo_body = {"sub": SUBJECT, "email": "alice@example.com", "groups": ["admins"]}
        params = _start(flow, idp)

        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert result.identity.raw_claims["groups"] == ["admins"]

    def test_unknown_user_with_creation_disabled(
        self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient, idp: FakeIdP
    ) -> None:
        """An unknown user with creation off is rejected before the host acts."""
        flow = _make_flow(replace(client_config, create_if_does_not_exist=False), host, token_client)
        params = _start(flow, idp)

        with pytest.raises(IdentityPolicyError) as exc_info:
            flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert exc_info.value.reason == IdentityRejectReason.USER_NOT_FOUND
        assert host.created == []
        assert host.tokens == {}

    def test_redirect_user_back(
        self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient, idp: FakeIdP
    ) -> None:
        """The stored redirect target is returned with the login."""
        flow = _make_flow(replace(client_config, redirect_user_back=True), host, token_client)
        params = _start(flow, idp, redirect_to="/reports/42")

        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert result.redirect_to == "/reports/42"

    def test_claim_transform(
        self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient, idp: FakeIdP
    ) -> None:
        """claim_transform runs before identity resolution."""
        def uppercase_email(claims):
            return {**claims, "email": claims["email"].upper()}

        flow = _make_flow(replace(client_config, claim_transform=uppercase_email), host, token_client)
        params = _start(flow, idp)

        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})

        assert result.identity.subject_identity == "ALICE@EXAMPLE.COM"


class TestCompleteLogin:
    """Tests for handing a validated login to the host."""

    def test_rejected_result_creates_nothing(self, flow: AuthorizationCodeFlow, idp: FakeIdP, host: FakeHost) -> None:
        """A rejected identity raises IdentityPolicyError and stores no tokens."""
        params = _start(flow, idp)
        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})
        rejected = replace(
            result,
            identity=replace(
                result.identity, action=IdentityAction.REJECT, reason=IdentityRejectReason.LOGIN_DENIED
            ),
        )

        with pytest.raises(IdentityPolicyError) as exc_info:
            flow.complete_login(rejected)

        assert exc_info.value.reason == IdentityRejectReason.LOGIN_DENIED
        assert host.created == []
        assert host.tokens == {}

    def test_login_without_local_account(self, flow: AuthorizationCodeFlow, idp: FakeIdP, host: FakeHost) -> None:
        """A LOGIN result without a local account reference is refused."""
        params = _start(flow, idp)
        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})
        broken = replace(result, identity=replace(result.identity, action=IdentityAction.LOGIN, local_ref=None))

        with pytest.raises(ValueError, match="without a local account"):
            flow.complete_login(broken)

        assert host.updated == []
        assert host.tokens == {}


class TestEndSession:
    """Tests for logout URLs."""

    def test_uses_stored_id_token(self, flow: AuthorizationCodeFlow, idp: FakeIdP) -> None:
        """The logout URL hints with the stored ID token."""
        params = _start(flow, idp)
        result = flow.handle_callback({"state": params["state"], "code": "auth-code"})
        ref = flow.complete_login(result)

        url = flow.end_session_url(ref)

        assert url is not None
        assert _params(url)["id_token_hint"] == result.tokens.id_token

    def test_post_logout_redirect(
        self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient
    ) -> None:
        """post_logout_redirect_uri is added to the logout URL."""
        config = replace(client_config, post_logout_redirect_uri="https://rp.example.com/bye")
        flow = _make_flow(config, host, token_client)

        url = flow.end_session_url()

        assert url is not None
        assert _params(url)["post_logout_redirect_uri"] == "https://rp.example.com/bye"

    def test_disabled(self, client_config: ClientConfig, host: FakeHost, token_client: TokenClient) -> None:
        """No logout URL when redirect_on_logout is off."""
        flow = _make_flow(replace(client_config, redirect_on_logout=False), host, token_client)
        assert flow.end_session_url() is None
