"""OIDC login, callback and logout routes.

Also installs a per-request hook that refreshes the logged-in account's
tokens and, when privacy is enforced, keeps anonymous users out.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, cast

from flask import Blueprint, current_app, g, redirect, request, session, url_for

from oidcrp.core.errors import (
    ConfigError,
    HttpError,
    IdentityPolicyError,
    OAuthError,
    OIDCError,
    StateError,
    TokenValidationError,
)
from oidcrp.core.oidc.identity import LocalIdentityRef
from oidcrp.core.oidc.session import RefreshStatus

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

    from oidcrp.core.oidc.flows import AuthorizationCodeFlow
    from oidcrp.core.oidc.session import SessionManager

logger = logging.getLogger(__name__)

oidc_bp = Blueprint("oidc", __name__, url_prefix="/oidc")

# Session key for the logged-in local account
SESSION_ACCOUNT_KEY = "oidc_account_id"

# Endpoints reachable without a session even when privacy is enforced
PUBLIC_ENDPOINTS = {"main.health", "static"}

_ERROR_STATUS: list[tuple[type[OIDCError], int]] = [
    (StateError, 400),
    (OAuthError, 400),
    (TokenValidationError, 401),
    (IdentityPolicyError, 403),
    (HttpError, 502),
    (ConfigError, 500),
]


def get_flow() -> AuthorizationCodeFlow:
    """Get the login flow from the app extensions."""
    return cast("AuthorizationCodeFlow", current_app.extensions["oidcrp"]["flow"])


def get_session_manager() -> SessionManager:
    """Get the session manager from the app extensions."""
    return cast("SessionManager", current_app.extensions["oidcrp"]["sessions"])


def current_account() -> LocalIdentityRef | None:
    """The local account bound to this browser session, if any."""
    account_id = session.get(SESSION_ACCOUNT_KEY)
    if not account_id:
        return None
    return LocalIdentityRef(id=str(account_id))


def safe_redirect_target(target: str | None) -> str | None:
    """Accept only same-site relative paths as post-login destinations."""
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return None
    return target


def error_response(error: OIDCError) -> tuple[dict[str, str], int]:
    """Map an error to a sanitized JSON body and HTTP status."""
    status = next((code for cls, code in _ERROR_STATUS if isinstance(error, cls)), 400)
    return {"error": error.user_message, "login_url": url_for("oidc.login")}, status


@oidc_bp.route("/login")
def login() -> WerkzeugResponse:
    """Start a login and redirect to the identity provider."""
    auth_request = get_flow().begin_login(
        redirect_to=safe_redirect_target(request.args.get("redirect_to")),
        prompt=request.args.get("prompt"),
        login_hint=request.args.get("login_hint"),
    )
    return redirect(auth_request.authorization_url)


@oidc_bp.route("/callback")
def callback() -> WerkzeugResponse | tuple[dict[str, str], int]:
    """Handle the authorization callback from the IdP."""
    flow = get_flow()
    try:
        result = flow.handle_callback(request.args.to_dict())
        ref = flow.complete_login(result)
    except OIDCError as e:
        logger.warning(f"Login failed: {e}")
        return error_response(e)

    session.clear()
    session[SESSION_ACCOUNT_KEY] = ref.id
    return redirect(result.redirect_to or url_for("main.index"))


@oidc_bp.route("/logout")
def logout() -> WerkzeugResponse:
    """End the local session and, if configured, the IdP session."""
    ref = current_account()
    end_session_url = get_flow().end_session_url(ref) if ref is not None else None
    session.pop(SESSION_ACCOUNT_KEY, None)
    return redirect(end_session_url or url_for("main.index"))


@oidc_bp.before_app_request
def refresh_session() -> WerkzeugResponse | tuple[dict[str, str], int] | None:
    """Keep the session's tokens fresh and enforce privacy for anonymous users."""
    endpoint = request.endpoint or ""
    if endpoint.startswith("oidc.") or endpoint in PUBLIC_ENDPOINTS:
        return None

    ref = current_account()
    if ref is not None:
        result = get_session_manager().refresh_if_needed(ref)
        if result.status == RefreshStatus.SESSION_EXPIRED:
            logger.info(f"Session for account {ref.id} expired")
            session.pop(SESSION_ACCOUNT_KEY, None)
            ref = None
    g.oidc_account = ref

    if ref is not None:
        return None

    config = get_flow().config
    login_url = url_for("oidc.login", redirect_to=request.full_path.rstrip("?"))
    if config.login_type == "auto" and endpoint == "main.index":
        return redirect(login_url)
    if config.enforce_privacy:
        if request.method == "GET":
            return redirect(login_url)
        return {"error": "Authentication required", "login_url": login_url}, 401
    return None
