"""CLI entry point for oidcrp."""

from pathlib import Path

import click

from oidcrp import __version__
from oidcrp.cli import config as config_commands
from oidcrp.cli import states as states_commands
from oidcrp.cli.output import error_result, json_option, load_app_config, output_result


@click.group()
@click.version_option(version=__version__, prog_name="oidcrp")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    default=None,
    help="Path to config.yaml (default: ~/.oidcrp/config.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log protocol traffic to stderr")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """oidcrp - OpenID Connect relying party toolkit."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    if verbose:
        from oidcrp.core.logging import LogLevel, configure_logging

        configure_logging(level=LogLevel.DEBUG)


@cli.command()
@click.argument("issuer")
@click.option("--timeout", type=float, default=10.0, show_default=True, help="Request timeout in seconds")
@click.option("--insecure", is_flag=True, help="Skip TLS certificate verification")
@json_option
def discover(issuer: str, timeout: float, insecure: bool, output_json: bool) -> None:
    """Fetch an issuer's OpenID Provider configuration.

    ISSUER is the issuer URL or the full discovery document URL.

    Examples:

        oidcrp discover https://accounts.example.com
    """
    from oidcrp.core.oidc.discovery import fetch_oidc_discovery

    result = fetch_oidc_discovery(issuer, timeout=timeout, verify_ssl=not insecure)
    if not result.success:
        error_result(result.error or "Discovery failed", output_json)

    output_result(
        {
            "issuer": result.issuer,
            "authorization_endpoint": result.authorization_endpoint,
            "token_endpoint": result.token_endpoint,
            "userinfo_endpoint": result.userinfo_endpoint,
            "end_session_endpoint": result.end_session_endpoint,
            "jwks_uri": result.jwks_uri,
            "id_token_signing_alg_values_supported": result.id_token_signing_alg_values_supported,
        },
        as_json=output_json,
    )


@cli.command("login-url")
@click.option("--prompt", default=None, help="OIDC prompt parameter")
@click.option("--login-hint", default=None, help="OIDC login_hint parameter")
@json_option
@click.pass_context
def login_url(ctx: click.Context, prompt: str | None, login_hint: str | None, output_json: bool) -> None:
    """Issue a state and print the authorization URL.

    The state is stored in the configured database, so a callback served
    by the web adapter with the same database can redeem it.
    """
    from oidcrp.core.errors import ConfigError
    from oidcrp.core.oidc.client import TokenClient, generate_code_verifier
    from oidcrp.storage import Database, SQLStateStore

    app_config = load_app_config(ctx, output_json)
    client = app_config.client
    try:
        client.validate()
    except ConfigError as e:
        error_result(str(e), output_json)

    database = Database(app_config.database_url)
    try:
        store = SQLStateStore(database)
        state = store.issue(
            client.state_ttl,
            code_verifier=generate_code_verifier() if client.use_pkce else None,
        )
    finally:
        database.close()

    url = TokenClient(client).authorization_url(state, prompt=prompt, login_hint=login_hint)
    if client.url_decorator is not None:
        url = client.url_decorator(url)

    if output_json:
        output_result(
            {
                "authorization_url": url,
                "correlation_id": state.correlation_id,
                "expires_at": state.expires_at.isoformat(),
            },
            as_json=True,
        )
    else:
        click.echo(url)


cli.add_command(config_commands.config)
cli.add_command(states_commands.states)
