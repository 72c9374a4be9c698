"""Relying party configuration management.

Loads configuration from config.yaml files and environment variables.
Environment variables take precedence over config file settings.

The resulting ClientConfig is immutable and is threaded explicitly through
every component; nothing reads settings from global state.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from oidcrp.core.errors import ConfigError

if TYPE_CHECKING:
    from oidcrp.core.oidc.discovery import OIDCDiscoveryResult

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".oidcrp"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DATABASE_URL = f"sqlite:///{DEFAULT_CONFIG_DIR / 'oidcrp.db'}"

# Environment variable prefix
ENV_PREFIX = "OIDCRP_"

DEFAULT_SIGNING_ALGORITHMS: tuple[str, ...] = (
    "RS256",
    "RS384",
    "RS512",
    "ES256",
    "ES384",
    "ES512",
    "PS256",
    "PS384",
    "PS512",
    "EdDSA",
)

LOGIN_TYPES = ("button", "auto")

# Flat keys used by older settings files, mapped to their current location
LEGACY_KEYS: dict[str, tuple[str, ...]] = {
    "ep_login": ("endpoints", "authorize"),
    "ep_token": ("endpoints", "token"),
    "ep_userinfo": ("endpoints", "userinfo"),
    "endpoint_login": ("endpoints", "authorize"),
    "endpoint_token": ("endpoints", "token"),
    "endpoint_userinfo": ("endpoints", "userinfo"),
    "endpoint_end_session": ("endpoints", "end_session"),
    "http_request_timeout": ("http_timeout",),
    "state_time_limit": ("state_ttl",),
    "displayname_format": ("display_name_format",),
}


@dataclass(frozen=True)
class Endpoints:
    """IdP endpoint URLs."""

    authorize: str = ""
    token: str = ""
    userinfo: str = ""
    end_session: str = ""
    jwks_uri: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Endpoints:
        """Create Endpoints from a dictionary."""
        return cls(
            authorize=data.get("authorize") or "",
            token=data.get("token") or "",
            userinfo=data.get("userinfo") or "",
            end_session=data.get("end_session") or "",
            jwks_uri=data.get("jwks_uri") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "authorize": self.authorize,
            "token": self.token,
            "userinfo": self.userinfo,
            "end_session": self.end_session,
            "jwks_uri": self.jwks_uri,
        }


@dataclass(frozen=True)
class ClientConfig:
    """Immutable configuration for one relying party client.

    The optional callables are extension points supplied by the host in code,
    never loaded from files:

    - ``claim_transform(claims) -> claims``: adjusts validated claims before
      identity resolution. Must return a new mapping.
    - ``url_decorator(url) -> url``: adjusts the authorization URL before the
      browser is redirected.
    - ``login_gate(claims) -> bool`` and ``creation_gate(claims) -> bool``:
      veto a login or an account creation.
    """

    client_id: str
    client_secret: str = ""
    scope: str = "openid email profile"
    endpoints: Endpoints = field(default_factory=Endpoints)
    issuer: str = ""
    redirect_uri: str = ""

    # Protocol settings
    state_ttl: int = 180
    http_timeout: float = 5.0
    verify_tls: bool = True
    clock_skew: int = 60
    signing_algorithms: tuple[str, ...] = DEFAULT_SIGNING_ALGORITHMS
    jwks: dict[str, Any] | None = field(default=None, compare=False)
    use_pkce: bool = False

    # Identity settings
    identity_key: str = "email"
    nickname_key: str = "email"
    email_format: str = "{email}"
    display_name_format: str = ""
    link_existing_users: bool = True
    create_if_does_not_exist: bool = True
    always_fetch_userinfo: bool = False

    # Session settings
    token_refresh_enable: bool = True
    refresh_margin: int = 60
    refresh_attempts: int = 2
    redirect_user_back: bool = False
    redirect_on_logout: bool = True
    post_logout_redirect_uri: str = ""
    login_type: str = "button"
    enforce_privacy: bool = False

    # Extension points
    claim_transform: Callable[[Mapping[str, Any]], Mapping[str, Any]] | None = field(
        default=None, compare=False, repr=False
    )
    url_decorator: Callable[[str], str] | None = field(default=None, compare=False, repr=False)
    login_gate: Callable[[Mapping[str, Any]], bool] | None = field(default=None, compare=False, repr=False)
    creation_gate: Callable[[Mapping[str, Any]], bool] | None = field(default=None, compare=False, repr=False)

    @property
    def scopes(self) -> list[str]:
        """Scope as a list of individual scope values."""
        return self.scope.split()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClientConfig:
        """Create ClientConfig from a dictionary.

        Legacy keys are migrated first, see migrate_legacy_settings().
        """
        data = migrate_legacy_settings(data)
        algorithms = data.get("signing_algorithms") or DEFAULT_SIGNING_ALGORITHMS
        if isinstance(algorithms, str):
            algorithms = algorithms.replace(",", " ").split()
        scope = data.get("scope") or "openid email profile"
        if isinstance(scope, (list, tuple)):
            scope = " ".join(scope)

        try:
            return cls(
                client_id=str(data.get("client_id") or ""),
                client_secret=str(data.get("client_secret") or ""),
                scope=scope,
                endpoints=Endpoints.from_dict(data.get("endpoints") or {}),
                issuer=data.get("issuer") or "",
                redirect_uri=data.get("redirect_uri") or "",
                state_ttl=int(data.get("state_ttl", 180)),
                http_timeout=float(data.get("http_timeout", 5.0)),
                verify_tls=_as_bool(data.get("verify_tls", True)),
                clock_skew=int(data.get("clock_skew", 60)),
                signing_algorithms=tuple(algorithms),
                jwks=data.get("jwks"),
                use_pkce=_as_bool(data.get("use_pkce", False)),
                identity_key=data.get("identity_key") or "email",
                nickname_key=data.get("nickname_key") or "email",
                email_format=data.get("email_format", "{email}") or "",
                display_name_format=data.get("display_name_format") or "",
                link_existing_users=_as_bool(data.get("link_existing_users", True)),
                create_if_does_not_exist=_as_bool(data.get("create_if_does_not_exist", True)),
                always_fetch_userinfo=_as_bool(data.get("always_fetch_userinfo", False)),
                token_refresh_enable=_as_bool(data.get("token_refresh_enable", True)),
                refresh_margin=int(data.get("refresh_margin", 60)),
                refresh_attempts=int(data.get("refresh_attempts", 2)),
                redirect_user_back=_as_bool(data.get("redirect_user_back", False)),
                redirect_on_logout=_as_bool(data.get("redirect_on_logout", True)),
                post_logout_redirect_uri=data.get("post_logout_redirect_uri") or "",
                login_type=data.get("login_type") or "button",
                enforce_privacy=_as_bool(data.get("enforce_privacy", False)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid client configuration: {e}") from e

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Args:
            include_secrets: If False, the client secret is masked.
        """
        data: dict[str, Any] = {
            "client_id": self.client_id,
            "client_secret": self.client_secret if include_secrets else _mask(self.client_secret),
            "scope": self.scope,
            "endpoints": self.endpoints.to_dict(),
            "issuer": self.issuer,
            "redirect_uri": self.redirect_uri,
            "state_ttl": self.state_ttl,
            "http_timeout": self.http_timeout,
            "verify_tls": self.verify_tls,
            "clock_skew": self.clock_skew,
            "signing_algorithms": list(self.signing_algorithms),
            "use_pkce": self.use_pkce,
            "identity_key": self.identity_key,
            "nickname_key": self.nickname_key,
            "email_format": self.email_format,
            "display_name_format": self.display_name_format,
            "link_existing_users": self.link_existing_users,
            "create_if_does_not_exist": self.create_if_does_not_exist,
            "always_fetch_userinfo": self.always_fetch_userinfo,
            "token_refresh_enable": self.token_refresh_enable,
            "refresh_margin": self.refresh_margin,
            "refresh_attempts": self.refresh_attempts,
            "redirect_user_back": self.redirect_user_back,
            "redirect_on_logout": self.redirect_on_logout,
            "post_logout_redirect_uri": self.post_logout_redirect_uri,
            "login_type": self.login_type,
            "enforce_privacy": self.enforce_privacy,
        }
        if self.jwks is not None:
            data["jwks"] = self.jwks
        return data

    def validate(self) -> ClientConfig:
        """Check the configuration is usable for a login.

        Returns:
            self, so the call can be chained after construction.

        Raises:
            ConfigError: If a required setting is missing or malformed.
        """
        problems = []
        if not self.client_id:
            problems.append("client_id is required")
        if not self.redirect_uri:
            problems.append("redirect_uri is required")
        if not self.issuer:
            problems.append("issuer is required")
        if not self.endpoints.authorize:
            problems.append("authorize endpoint is required")
        if not self.endpoints.token:
            problems.append("token endpoint is required")
        if not self.signing_algorithms:
            problems.append("at least one signing algorithm is required")
        if any(alg.lower() == "none" for alg in self.signing_algorithms):
            problems.append("signing algorithm 'none' is not allowed")

        asymmetric = [alg for alg in self.signing_algorithms if not alg.startswith("HS")]
        if asymmetric and not (self.jwks or self.endpoints.jwks_uri):
            problems.append("jwks or endpoints.jwks_uri is required to verify signatures")
        if len(asymmetric) < len(self.signing_algorithms) and not self.client_secret:
            problems.append("client_secret is required for HMAC signing algorithms")

        if self.state_ttl <= 0:
            problems.append("state_ttl must be positive")
        if self.http_timeout <= 0:
            problems.append("http_timeout must be positive")
        if self.refresh_attempts < 1:
            problems.append("refresh_attempts must be at least 1")
        if self.login_type not in LOGIN_TYPES:
            problems.append(f"login_type must be one of {', '.join(LOGIN_TYPES)}")

        if problems:
            raise ConfigError("Invalid client configuration: " + "; ".join(problems))
        return self

    def with_discovery(self, discovery: OIDCDiscoveryResult) -> ClientConfig:
        """Return a copy with empty endpoints filled from a discovery document.

        Explicitly configured values always win over discovered ones.
        """
        endpoints = Endpoints(
            authorize=self.endpoints.authorize or discovery.authorization_endpoint or "",
            token=self.endpoints.token or discovery.token_endpoint or "",
            userinfo=self.endpoints.userinfo or discovery.userinfo_endpoint or "",
            end_session=self.endpoints.end_session or discovery.end_session_endpoint or "",
            jwks_uri=self.endpoints.jwks_uri or discovery.jwks_uri or "",
        )
        return replace(
            self,
            endpoints=endpoints,
            issuer=self.issuer or discovery.issuer or "",
        )


def migrate_legacy_settings(data: Mapping[str, Any]) -> dict[str, Any]:
    """Move legacy flat settings keys to their current location.

    Runs once at load time so the rest of the code only sees current names.
    Current keys are never overwritten by legacy ones.

    Args:
        data: Raw settings mapping.

    Returns:
        A new dictionary with legacy keys migrated and removed.
    """
    migrated = {k: v for k, v in data.items() if k not in LEGACY_KEYS and k != "no_sslverify"}
    endpoints = dict(migrated.get("endpoints") or {})

    for legacy_key, target in LEGACY_KEYS.items():
        if legacy_key not in data or data[legacy_key] in (None, ""):
            continue
        value = data[legacy_key]
        if target[0] == "endpoints":
            endpoints.setdefault(target[1], value)
        else:
            migrated.setdefault(target[0], value)

    if "no_sslverify" in data and "verify_tls" not in data:
        migrated["verify_tls"] = not _as_bool(data["no_sslverify"])

    if endpoints:
        migrated["endpoints"] = endpoints
    return migrated


@dataclass
class LoggingSettings:
    """Logging configuration settings."""

    level: str = "INFO"
    trace_enabled: bool = False
    log_file: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LoggingSettings:
        """Create LoggingSettings from a dictionary."""
        return cls(
            level=str(data.get("level", "INFO")).upper(),
            trace_enabled=_as_bool(data.get("trace_enabled", False)),
            log_file=data.get("log_file"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "trace_enabled": self.trace_enabled,
            "log_file": self.log_file,
        }


@dataclass
class AppConfig:
    """Main application configuration."""

    client: ClientConfig
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    database_url: str = DEFAULT_DATABASE_URL
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], config_path: Path | None = None) -> AppConfig:
        """Create AppConfig from a dictionary.

        A file without an ``oidc`` section is treated as a legacy flat
        settings file and migrated.
        """
        client_data = data.get("oidc")
        if client_data is None:
            client_data = {k: v for k, v in data.items() if k not in ("logging", "database_url")}
        return cls(
            client=ClientConfig.from_dict(client_data),
            logging=LoggingSettings.from_dict(data.get("logging") or {}),
            database_url=data.get("database_url") or DEFAULT_DATABASE_URL,
            config_path=config_path,
        )

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "oidc": self.client.to_dict(include_secrets=include_secrets),
            "logging": self.logging.to_dict(),
            "database_url": self.database_url,
        }

    def save(self, path: Path | None = None) -> Path:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.

        Returns:
            The path written.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        save_path.chmod(0o600)
        return save_path


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _mask(secret: str) -> str:
    if not secret:
        return ""
    return "********"


# Environment variable name -> (settings key path, converter)
_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], Callable[[str], Any]]] = {
    "CLIENT_ID": (("oidc", "client_id"), str),
    "CLIENT_SECRET": (("oidc", "client_secret"), str),
    "SCOPE": (("oidc", "scope"), str),
    "ISSUER": (("oidc", "issuer"), str),
    "REDIRECT_URI": (("oidc", "redirect_uri"), str),
    "AUTHORIZE_ENDPOINT": (("oidc", "endpoints", "authorize"), str),
    "TOKEN_ENDPOINT": (("oidc", "endpoints", "token"), str),
    "USERINFO_ENDPOINT": (("oidc", "endpoints", "userinfo"), str),
    "END_SESSION_ENDPOINT": (("oidc", "endpoints", "end_session"), str),
    "JWKS_URI": (("oidc", "endpoints", "jwks_uri"), str),
    "STATE_TTL": (("oidc", "state_ttl"), int),
    "HTTP_TIMEOUT": (("oidc", "http_timeout"), float),
    "VERIFY_TLS": (("oidc", "verify_tls"), _as_bool),
    "LOG_LEVEL": (("logging", "level"), str),
    "LOG_FILE": (("logging", "log_file"), str),
    "DATABASE_URL": (("database_url",), str),
}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for suffix, (path, convert) in _ENV_OVERRIDES.items():
        raw = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r}") from e

        target = data
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return data


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        AppConfig with merged settings. The client config is not validated
        here; call ``config.client.validate()`` at startup.

    Raises:
        ConfigError: If the file cannot be parsed.
    """
    file_path = config_path or DEFAULT_CONFIG_FILE
    data: dict[str, Any] = {}

    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{file_path} must contain a mapping")

        # Flat legacy files are nested under "oidc" before env overrides apply
        if "oidc" not in data:
            data = {
                "oidc": {k: v for k, v in data.items() if k not in ("logging", "database_url")},
                **{k: v for k, v in data.items() if k in ("logging", "database_url")},
            }

    data = _apply_env_overrides(data)
    data.setdefault("oidc", {})
    return AppConfig.from_dict(data, config_path=file_path if file_path.exists() else None)


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# oidcrp configuration file
# Environment variables override these settings (prefix: OIDCRP_)

oidc:
  # Client credentials registered with the identity provider
  client_id: ""
  client_secret: ""

  # Space separated list of scopes
  scope: "openid email profile"

  # Expected "iss" claim; also used for discovery
  issuer: ""

  # Callback URL registered with the identity provider
  redirect_uri: "https://localhost:5000/oidc/callback"

  endpoints:
    authorize: ""
    token: ""
    userinfo: ""
    end_session: ""
    jwks_uri: ""

  # Seconds an authorization state stays valid
  state_ttl: 180

  # Seconds before outbound requests time out
  http_timeout: 5

  # Only disable for development against self-signed certificates
  verify_tls: true

  # Claim used to match local accounts
  identity_key: "email"
  nickname_key: "email"
  email_format: "{email}"
  display_name_format: ""

  link_existing_users: true
  create_if_does_not_exist: true

  token_refresh_enable: true
  refresh_margin: 60

  redirect_user_back: false
  redirect_on_logout: true

  # "button" or "auto"
  login_type: "button"
  enforce_privacy: false

logging:
  level: "INFO"
  trace_enabled: false

database_url: "sqlite:///oidcrp.db"
"""
