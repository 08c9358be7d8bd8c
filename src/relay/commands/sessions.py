"""relay sessions — inspect or prune the recorded session map."""

from __future__ import annotations

import click

from relay.commands.common import load_config_or_exit
from relay.session.store import SessionStore


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "--forget",
    "forget_id",
    default=None,
    help="Remove the session recorded for this conversation key.",
)
def sessions(config_file: str | None, forget_id: str | None) -> None:
    """List live session records."""
    config = load_config_or_exit(config_file)
    store = SessionStore.from_config(config.sessions)

    if forget_id is not None:
        if not store.remove(forget_id):
            click.echo(f"No session recorded for {forget_id}")
            raise SystemExit(1)
        store.save()
        click.echo(f"Forgot session for {forget_id}")
        return

    stats = store.snapshot()
    if not stats.total:
        click.echo("No live sessions.")
        return

    click.echo(f"{stats.total} live session(s):")
    for row in sorted(stats.sessions, key=lambda r: r.id):
        click.echo(
            f"  {row.id}  ->  {row.internal_id}  "
            f"({row.messages} msgs, age {row.age}, idle {row.idle})"
        )
