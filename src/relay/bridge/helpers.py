"""Shared helper functions for the bridge."""

from __future__ import annotations

import uuid


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def new_message_id() -> str:
    """Return a Messages-API style identifier (``msg_`` + 20 hex chars)."""
    return f"msg_{uuid.uuid4().hex[:20]}"
