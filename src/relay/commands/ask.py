"""relay ask — run one turn through the CLI tool."""

from __future__ import annotations

import asyncio

import click

from relay.bridge.events import encode_sse
from relay.bridge.invoker import ProcessInvoker
from relay.commands.common import configure_logging, load_config_or_exit
from relay.config import RelayConfig
from relay.orchestrator import RequestOrchestrator, TurnFailedError, TurnRequest
from relay.session.store import SessionStore


@click.command()
@click.argument("prompt")
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "-s",
    "--session",
    "external_id",
    default=None,
    help="Conversation key; reuses the CLI session recorded for it.",
)
@click.option("--system", "system_prompt", default=None, help="Extra system prompt.")
@click.option(
    "--tools", "allowed_tools", default=None, help="Comma-separated tool allow-list."
)
@click.option("--model", default=None, help="Model override.")
@click.option(
    "--stream/--no-stream",
    default=True,
    help="Print SSE frames as they arrive, or only the final text.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def ask(
    prompt: str,
    config_file: str | None,
    external_id: str | None,
    system_prompt: str | None,
    allowed_tools: str | None,
    model: str | None,
    stream: bool,
    verbose: bool,
) -> None:
    """Send PROMPT to the CLI tool and print the response."""
    configure_logging(verbose)
    config = load_config_or_exit(config_file)

    turn = TurnRequest(
        prompt=prompt,
        system_prompt=system_prompt,
        allowed_tools=allowed_tools,
        model=model,
        external_id=external_id,
        stream=stream,
    )
    if not asyncio.run(_run_turn(config, turn)):
        raise SystemExit(1)


async def _run_turn(config: RelayConfig, turn: TurnRequest) -> bool:
    store = SessionStore.from_config(config.sessions)
    invoker = ProcessInvoker.from_config(config.cli)
    orchestrator = RequestOrchestrator.from_config(config, invoker, store)

    try:
        if turn.stream:
            async for frame in orchestrator.stream(turn):
                click.echo(encode_sse(frame), nl=False)
            return True

        try:
            result = await orchestrator.complete(turn)
        except TurnFailedError as exc:
            click.echo(f"Error: {exc}", err=True)
            return False
        click.echo(result.text)
        return True
    finally:
        await orchestrator.join()
        store.save()
