"""Pydantic v2 models for session continuity records."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SessionRecord(BaseModel):
    """Links one external conversation to the CLI's resumable session."""

    model_config = ConfigDict(extra="ignore")

    internal_id: str = Field(description="CLI session identifier used with --resume")
    external_id: str = Field(description="Caller-supplied conversation key")
    created_at: float = Field(description="Creation time, epoch seconds")
    last_activity: float = Field(description="Last successful turn, epoch seconds")
    message_count: int = Field(default=1, ge=0, description="Turns recorded so far")


class SessionSummary(BaseModel):
    """One row of :class:`SessionStats`."""

    id: str
    internal_id: str
    messages: int
    age: str
    idle: str


class SessionStats(BaseModel):
    """Read-only view of the store for observability."""

    total: int
    sessions: list[SessionSummary] = Field(default_factory=list)


def format_duration(seconds: float) -> str:
    """Format a duration as ``45s``, ``12m``, ``3h5m``, or ``2d4h``."""
    s = int(max(seconds, 0))
    if s < 60:
        return f"{s}s"
    m = s // 60
    if m < 60:
        return f"{m}m"
    h = m // 60
    if h < 24:
        return f"{h}h{m % 60}m"
    d = h // 24
    return f"{d}d{h % 24}h"
