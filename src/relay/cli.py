"""Root CLI group and version flag."""

import signal

import click

# Ignore SIGPIPE so a closed stdout pipe surfaces as an error on write
# instead of killing the process mid-turn.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from relay import __version__
from relay.commands.ask import ask
from relay.commands.sessions import sessions


@click.group()
@click.version_option(version=__version__, prog_name="relay")
def cli() -> None:
    """Relay — stream a CLI coding tool as a Messages-API response."""


cli.add_command(ask)
cli.add_command(sessions)
