"""OpenID Connect Relying Party core."""

__version__ = "0.1.0"
