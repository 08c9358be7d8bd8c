"""Load, validate, and resolve relay.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from relay.config.models import RelayConfig

DEFAULT_CONFIG_NAME = "relay.yaml"

#: Environment variable that fills ``cli.allowed_tools`` when unset.
ALLOWED_TOOLS_ENV = "ALLOWED_TOOLS"


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> RelayConfig:
    """Load and validate a relay.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              relay.yaml in the current directory and falls back
              to defaults when there is none.

    Returns:
        A validated RelayConfig instance.

    Raises:
        ConfigError: On a missing explicit file, bad YAML, or
            validation failure.
    """
    config_path = _resolve_path(path)
    if config_path is None:
        _load_env(Path.cwd())
        raw: dict[str, Any] = {}
        base_dir = Path.cwd()
    else:
        raw = _read_yaml(config_path)
        base_dir = config_path.parent
        _load_env(base_dir)
    _apply_env_defaults(raw)
    config = _validate(raw)
    config.sessions.file = str(_resolve_session_file(config.sessions.file, base_dir))
    return config


def _resolve_path(path: Path | None) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    if not default.is_file():
        return None
    return default


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env_defaults(raw: dict[str, Any]) -> None:
    tools = os.environ.get(ALLOWED_TOOLS_ENV)
    if not tools:
        return
    cli = raw.setdefault("cli", {})
    if isinstance(cli, dict) and cli.get("allowed_tools") is None:
        cli["allowed_tools"] = tools


def _resolve_session_file(file: str, base_dir: Path) -> Path:
    path = Path(file).expanduser()
    if path.is_absolute():
        return path
    return base_dir / path


def _validate(raw: dict[str, Any]) -> RelayConfig:
    try:
        return RelayConfig.model_validate(raw)
    except ValidationError as exc:
        errors = exc.errors()
        parts: list[str] = []
        for err in errors:
            loc = " → ".join(str(s) for s in err["loc"])
            msg = err["msg"]
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            elif "extra inputs" in msg.lower():
                msg = "Unknown setting"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc
