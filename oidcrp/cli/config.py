"""Configuration management CLI commands."""

from __future__ import annotations

from pathlib import Path

import click
import yaml

from oidcrp.cli.output import error_result, json_option, load_app_config, output_result
from oidcrp.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml
from oidcrp.core.errors import ConfigError


@click.group()
def config() -> None:
    """Manage oidcrp configuration."""
    pass


@config.command("init")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite an existing configuration file.",
)
@json_option
@click.pass_context
def config_init(ctx: click.Context, force: bool, output_json: bool) -> None:
    """Write a commented default configuration file.

    Examples:

        # Create ~/.oidcrp/config.yaml
        oidcrp config init

        # Write somewhere else
        oidcrp --config ./rp.yaml config init
    """
    path: Path = ctx.find_root().obj.get("config_path") or DEFAULT_CONFIG_FILE

    if path.exists() and not force:
        if output_json:
            output_result({"status": "exists", "path": str(path)}, as_json=True)
            return
        click.echo(f"Configuration already exists at {path}")
        click.echo("Use --force to overwrite it")
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_default_config_yaml())
    path.chmod(0o600)

    if output_json:
        output_result({"status": "created", "path": str(path)}, as_json=True)
    else:
        click.echo(f"Configuration written to {path}")
        click.echo("Fill in client_id, client_secret, issuer and redirect_uri, then run 'oidcrp config check'")


@config.command("show")
@json_option
@click.pass_context
def config_show(ctx: click.Context, output_json: bool) -> None:
    """Show the effective configuration with secrets masked."""
    app_config = load_app_config(ctx, output_json)
    data = app_config.to_dict(include_secrets=False)

    if output_json:
        output_result(data, as_json=True)
        return
    if app_config.config_path:
        click.echo(f"# Loaded from {app_config.config_path}")
    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip())


@config.command("check")
@click.option(
    "--discover/--no-discover",
    default=False,
    help="Fill missing endpoints from the issuer's discovery document first.",
)
@json_option
@click.pass_context
def config_check(ctx: click.Context, discover: bool, output_json: bool) -> None:
    """Check the configuration is complete enough for a login."""
    from oidcrp.core.oidc.discovery import fetch_oidc_discovery

    app_config = load_app_config(ctx, output_json)
    client = app_config.client

    if discover:
        if not client.issuer:
            error_result("Cannot discover endpoints without an issuer", output_json)
        result = fetch_oidc_discovery(client.issuer, timeout=client.http_timeout, verify_ssl=client.verify_tls)
        if not result.success:
            error_result(f"Discovery failed: {result.error}", output_json)
        client = client.with_discovery(result)

    try:
        client.validate()
    except ConfigError as e:
        error_result(str(e), output_json)

    if output_json:
        output_result({"status": "ok", "client_id": client.client_id, "issuer": client.issuer}, as_json=True)
    else:
        click.echo(f"Configuration OK for client '{client.client_id}' at {client.issuer}")
