"""Shared output helpers for CLI commands."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from oidcrp.core.config import AppConfig, load_config
from oidcrp.core.errors import ConfigError
from oidcrp.core.logging import configure_logging

# Common option for JSON output
json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result as JSON or formatted text.

    Args:
        data: Data to output
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return
    for key, value in data.items():
        click.echo(f"{key}: {value}")


def error_result(message: str, as_json: bool = False) -> NoReturn:
    """Output error message and exit.

    This function never returns - it either raises ClickException or calls sys.exit.

    Args:
        message: Error message
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps({"error": message}, indent=2), err=True)
        sys.exit(1)
    raise click.ClickException(message)


def load_app_config(ctx: click.Context, as_json: bool = False) -> AppConfig:
    """Load configuration from the path given to the top-level group.

    The file's logging section is applied unless ``-v`` already configured
    logging for this run.
    """
    options = ctx.find_root().obj
    config_path: Path | None = options.get("config_path")
    try:
        app_config = load_config(config_path)
    except ConfigError as e:
        error_result(str(e), as_json)

    if not options.get("verbose"):
        settings = app_config.logging
        configure_logging(
            level=settings.level,
            trace_enabled=settings.trace_enabled,
            log_file=settings.log_file,
        )
    return app_config
