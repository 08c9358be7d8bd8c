"""Pydantic v2 models for the CLI event stream and the outbound SSE protocol.

Two closed unions live here:

* :data:`RawRecord` — one decoded line of the CLI's ``stream-json``
  output, discriminated on its ``type`` field.
* :data:`ProtocolEvent` — one Messages-API streaming event.  The same
  models describe the event nested inside a ``stream_event`` record and
  the frames the translator emits, so upstream fields we do not model
  are carried through untouched (``extra="allow"``).
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

# ------------------------------------------------------------------ #
# Outbound / nested protocol events
# ------------------------------------------------------------------ #


class _ProtocolBase(BaseModel):
    model_config = ConfigDict(extra="allow")


class MessageStartEvent(_ProtocolBase):
    """Opens a message; ``message`` carries id, role, model and usage."""

    type: Literal["message_start"] = "message_start"
    message: dict[str, Any] = Field(default_factory=dict)


class ContentBlockStartEvent(_ProtocolBase):
    """Opens content block ``index``."""

    type: Literal["content_block_start"] = "content_block_start"
    index: int = 0
    content_block: dict[str, Any] = Field(default_factory=dict)

    @property
    def block_type(self) -> str | None:
        value = self.content_block.get("type")
        return value if isinstance(value, str) else None


class ContentBlockDeltaEvent(_ProtocolBase):
    """Incremental payload for an open content block."""

    type: Literal["content_block_delta"] = "content_block_delta"
    index: int = 0
    delta: dict[str, Any] = Field(default_factory=dict)

    @property
    def delta_type(self) -> str | None:
        value = self.delta.get("type")
        return value if isinstance(value, str) else None

    @property
    def text(self) -> str:
        value = self.delta.get("text")
        return value if isinstance(value, str) else ""


class ContentBlockStopEvent(_ProtocolBase):
    """Closes content block ``index``."""

    type: Literal["content_block_stop"] = "content_block_stop"
    index: int = 0


class MessageDeltaEvent(_ProtocolBase):
    """Top-level message changes: stop reason and final usage."""

    type: Literal["message_delta"] = "message_delta"
    delta: dict[str, Any] = Field(default_factory=dict)
    usage: dict[str, Any] = Field(default_factory=dict)


class MessageStopEvent(_ProtocolBase):
    """Terminates the message."""

    type: Literal["message_stop"] = "message_stop"


class PingEvent(_ProtocolBase):
    """Keep-alive."""

    type: Literal["ping"] = "ping"


class UnknownProtocolEvent(_ProtocolBase):
    """Any nested event type we do not recognise.  Never emitted."""

    type: str = ""


_PROTOCOL_TAGS = frozenset({
    "message_start",
    "content_block_start",
    "content_block_delta",
    "content_block_stop",
    "message_delta",
    "message_stop",
    "ping",
})


def _protocol_discriminator(v: Any) -> str:
    """Map raw data or a model instance to its union tag."""
    tag = v.get("type", "") if isinstance(v, dict) else getattr(v, "type", "")
    return tag if tag in _PROTOCOL_TAGS else "unknown"


ProtocolEvent = Annotated[
    Annotated[MessageStartEvent, Tag("message_start")]
    | Annotated[ContentBlockStartEvent, Tag("content_block_start")]
    | Annotated[ContentBlockDeltaEvent, Tag("content_block_delta")]
    | Annotated[ContentBlockStopEvent, Tag("content_block_stop")]
    | Annotated[MessageDeltaEvent, Tag("message_delta")]
    | Annotated[MessageStopEvent, Tag("message_stop")]
    | Annotated[PingEvent, Tag("ping")]
    | Annotated[UnknownProtocolEvent, Tag("unknown")],
    Discriminator(_protocol_discriminator),
]
"""Discriminated union of Messages-API streaming events."""

#: Frames the translator may emit.  ``UnknownProtocolEvent`` is excluded.
Frame = (
    MessageStartEvent
    | ContentBlockStartEvent
    | ContentBlockDeltaEvent
    | ContentBlockStopEvent
    | MessageDeltaEvent
    | MessageStopEvent
    | PingEvent
)

# ------------------------------------------------------------------ #
# Raw CLI records
# ------------------------------------------------------------------ #


class _RecordBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: str | None = Field(
        default=None,
        description="Resumable session identifier of the CLI tool",
    )


class StreamEventRecord(_RecordBase):
    """A partial-message event forwarded from the model API."""

    type: Literal["stream_event"] = "stream_event"
    event: ProtocolEvent = Field(default_factory=UnknownProtocolEvent)
    parent_tool_use_id: str | None = Field(
        default=None,
        description="Set when the event belongs to a nested tool invocation",
    )
    uuid: str | None = None

    @property
    def is_nested(self) -> bool:
        return bool(self.parent_tool_use_id)


class ResultRecord(_RecordBase):
    """Terminal summary of a turn."""

    type: Literal["result"] = "result"
    subtype: str | None = None
    result: str | None = None
    is_error: bool = False
    num_turns: int | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    total_cost_usd: float | None = None
    cost_usd: float | None = None
    usage: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.result or ""

    @property
    def cost(self) -> float | None:
        return self.total_cost_usd if self.total_cost_usd is not None else self.cost_usd


class SystemRecord(_RecordBase):
    """Informational ``system`` record (init, hook output, ...)."""

    type: Literal["system"] = "system"
    subtype: str | None = None


class OtherRecord(_RecordBase):
    """Any other record type (``assistant``, ``user``, ...).  Ignored."""

    type: str = ""


_RECORD_TAGS = frozenset({"stream_event", "result", "system"})


def _record_discriminator(v: Any) -> str:
    tag = v.get("type", "") if isinstance(v, dict) else getattr(v, "type", "")
    return tag if tag in _RECORD_TAGS else "other"


RawRecord = Annotated[
    Annotated[StreamEventRecord, Tag("stream_event")]
    | Annotated[ResultRecord, Tag("result")]
    | Annotated[SystemRecord, Tag("system")]
    | Annotated[OtherRecord, Tag("other")],
    Discriminator(_record_discriminator),
]
"""Discriminated union of CLI ``stream-json`` records."""

_RECORD_ADAPTER: TypeAdapter[RawRecord] = TypeAdapter(RawRecord)


def parse_record(data: dict[str, Any]) -> RawRecord:
    """Validate a decoded JSON object into its record variant.

    Raises:
        pydantic.ValidationError: If a known variant has the wrong shape.
    """
    return _RECORD_ADAPTER.validate_python(data)


def encode_sse(frame: Frame) -> str:
    """Render *frame* as one Server-Sent-Events message."""
    data = frame.model_dump_json()
    return f"event: {frame.type}\ndata: {data}\n\n"


def frame_to_dict(frame: Frame) -> dict[str, Any]:
    """Plain-dict view of a frame (handy for assertions and logging)."""
    return json.loads(frame.model_dump_json())
