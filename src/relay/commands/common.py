"""Helpers shared by the relay commands."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from relay.config import ConfigError, RelayConfig, load_config


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr; *verbose* lowers the level to DEBUG."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def load_config_or_exit(config_file: str | None) -> RelayConfig:
    try:
        return load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc
