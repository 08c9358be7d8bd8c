"""Shared constants for the Relay runtime."""

from __future__ import annotations

#: Model name reported when a request does not name one.
DEFAULT_MODEL = "claude-sonnet-4-6"

#: Executable spawned for every turn.
DEFAULT_CLI_BINARY = "claude"

#: Text returned in buffered mode when the turn produced no output at all.
EMPTY_RESPONSE_TEXT = "(no response)"
