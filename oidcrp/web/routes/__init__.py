"""Web routes for oidcrp."""

from flask import Blueprint, Flask, g, url_for

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
def index() -> dict[str, object]:
    """Report who is logged in."""
    account = g.get("oidc_account")
    if account is None:
        return {"authenticated": False, "login_url": url_for("oidc.login")}
    return {"authenticated": True, "account": account.id, "logout_url": url_for("oidc.logout")}


@main_bp.route("/health")
def health() -> dict[str, str]:
    """Health check endpoint (unauthenticated)."""
    return {"status": "healthy"}


def init_app(app: Flask) -> None:
    """Register blueprints with the Flask app."""
    from oidcrp.web.routes.oidc import oidc_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(oidc_bp)
