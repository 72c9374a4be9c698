"""Flask application factory."""

from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import TYPE_CHECKING

from flask import Flask

from oidcrp.core.errors import ConfigError

if TYPE_CHECKING:
    from oidcrp.core.config import ClientConfig, LoggingSettings
    from oidcrp.core.oidc.client import TokenClient
    from oidcrp.core.oidc.identity import IdentityHost
    from oidcrp.core.oidc.state import StateStore
    from oidcrp.core.oidc.validation import IdTokenValidator


def _secret_key() -> str:
    """Secret key from OIDCRP_SECRET_KEY, else a persistent key file."""
    secret_key = os.environ.get("OIDCRP_SECRET_KEY")
    if secret_key:
        return secret_key

    key_path = Path.home() / ".oidcrp" / "flask_secret.key"
    if key_path.exists():
        return key_path.read_text().strip()

    secret_key = secrets.token_hex(32)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(secret_key)
    key_path.chmod(0o600)
    return secret_key


def _configure_logging(settings: LoggingSettings) -> None:
    """Apply the logging section of the loaded configuration."""
    from oidcrp.core.logging import configure_logging

    configure_logging(
        level=settings.level,
        trace_enabled=settings.trace_enabled,
        log_file=settings.log_file,
    )


def create_app(
    config: dict | None = None,
    *,
    host: IdentityHost | None = None,
    client_config: ClientConfig | None = None,
    state_store: StateStore | None = None,
    token_client: TokenClient | None = None,
    validator: IdTokenValidator | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Optional Flask configuration overrides.
        host: Host application account operations. Required.
        client_config: Relying party configuration. Loaded from the config
            file and environment if not provided.
        state_store: Authorization state store. Defaults to an SQL store on
            the configured database.
        token_client: Token endpoint client, mainly for tests.
        validator: ID token validator, mainly for tests.

    Returns:
        Configured Flask application instance.

    Raises:
        ConfigError: If no host is given or the client configuration is invalid.
    """
    from oidcrp.core.oidc.flows import AuthorizationCodeFlow
    from oidcrp.core.oidc.session import SessionManager

    if host is None:
        raise ConfigError("create_app requires an IdentityHost")

    app = Flask(__name__)

    if config and "SECRET_KEY" in config:
        app.config.from_mapping(config)
    else:
        app.config.from_mapping(SECRET_KEY=_secret_key(), SESSION_COOKIE_HTTPONLY=True)
        if config:
            app.config.from_mapping(config)

    if client_config is None or state_store is None:
        from oidcrp.core.config import load_config

        app_config = load_config()
        _configure_logging(app_config.logging)
        client_config = client_config or app_config.client
        if state_store is None:
            from oidcrp.storage import Database, SQLStateStore

            state_store = SQLStateStore(Database(app_config.database_url))

    flow = AuthorizationCodeFlow(
        client_config,
        state_store,
        host,
        token_client=token_client,
        validator=validator,
    )
    sessions = SessionManager(
        flow.config,
        host,
        token_client=flow.token_client,
        validator=flow.validator,
    )
    app.extensions["oidcrp"] = {"flow": flow, "sessions": sessions}

    # Register blueprints
    from oidcrp.web import routes

    routes.init_app(app)

    return app
