"""Command-line interface for oidcrp."""

from oidcrp.cli.main import cli

__all__ = ["cli"]
