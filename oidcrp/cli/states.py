"""Authorization state maintenance commands."""

from __future__ import annotations

import click

from oidcrp.cli.output import json_option, load_app_config, output_result


@click.group()
def states() -> None:
    """Manage pending authorization states."""
    pass


@states.command("sweep")
@json_option
@click.pass_context
def states_sweep(ctx: click.Context, output_json: bool) -> None:
    """Delete expired authorization states.

    Intended to run periodically, for example once a day from cron.
    """
    from oidcrp.storage import Database, SQLStateStore

    app_config = load_app_config(ctx, output_json)
    database = Database(app_config.database_url)
    try:
        store = SQLStateStore(database)
        removed = store.purge_expired()
        remaining = len(store)
    finally:
        database.close()

    if output_json:
        output_result({"removed": removed, "remaining": remaining}, as_json=True)
    else:
        click.echo(f"Removed {removed} expired states ({remaining} pending)")
