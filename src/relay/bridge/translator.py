"""Protocol translator — CLI ``stream-json`` records to a well-formed SSE envelope.

States: ``AWAITING_START`` → ``IN_BODY`` → ``DONE``.

* Nested records (``parent_tool_use_id`` set) are always dropped.
* The first top-level ``message_start`` opens the body; its id is
  rewritten to this response's id.  Later starts are upstream noise.
* Only text blocks and text deltas are forwarded.  Block indexes are
  renumbered so the caller sees ``0, 1, ...`` with no gaps left by
  suppressed tool-use blocks.
* Upstream ``message_delta`` / ``message_stop`` are dropped; the
  translator emits its own pair once the terminal ``result`` record
  arrives, since only that record is authoritative.
* A ``result`` with nothing before it yields a synthesized envelope.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from relay.bridge.events import (
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    Frame,
    MessageDeltaEvent,
    MessageStartEvent,
    MessageStopEvent,
    OtherRecord,
    PingEvent,
    RawRecord,
    ResultRecord,
    StreamEventRecord,
    SystemRecord,
    UnknownProtocolEvent,
)
from relay.constants import DEFAULT_MODEL

logger = logging.getLogger(__name__)

#: Stop reason reported on every synthesized terminal delta.
STOP_REASON = "end_turn"


class TranslatorState(enum.Enum):
    AWAITING_START = "awaiting_start"
    IN_BODY = "in_body"
    DONE = "done"


def _message_shell(message_id: str, model: str) -> dict[str, Any]:
    return {
        "id": message_id,
        "type": "message",
        "role": "assistant",
        "content": [],
        "model": model,
        "stop_reason": None,
        "stop_sequence": None,
        "usage": {"input_tokens": 0, "output_tokens": 0},
    }


def _terminal_pair(output_tokens: int = 0) -> list[Frame]:
    return [
        MessageDeltaEvent(
            delta={"stop_reason": STOP_REASON, "stop_sequence": None},
            usage={"output_tokens": output_tokens},
        ),
        MessageStopEvent(),
    ]


def synthesize_envelope(
    message_id: str,
    model: str,
    text: str,
    output_tokens: int = 0,
) -> list[Frame]:
    """Build a complete one-block message carrying *text*.

    Used for bare-result turns, canned replies, and error reports.
    """
    return [
        MessageStartEvent(message=_message_shell(message_id, model)),
        ContentBlockStartEvent(index=0, content_block={"type": "text", "text": ""}),
        ContentBlockDeltaEvent(index=0, delta={"type": "text_delta", "text": text}),
        ContentBlockStopEvent(index=0),
        *_terminal_pair(output_tokens),
    ]


class ProtocolTranslator:
    """Single-use state machine for one response.

    Feed records with :meth:`feed`; each call returns the frames to send,
    in order.  Call :meth:`finish` when the record stream ends cleanly, or
    :meth:`abort` when it fails after frames went out.
    """

    def __init__(self, message_id: str, model: str | None = None) -> None:
        self.message_id = message_id
        self.model = model or DEFAULT_MODEL
        self.state = TranslatorState.AWAITING_START

        self.session_id: str | None = None
        self.result: ResultRecord | None = None
        self._streamed_text: list[str] = []

        # Upstream block index -> outbound index, for the open block only.
        self._open_block: tuple[int, int] | None = None
        self._next_index = 0

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def started(self) -> bool:
        """Whether a ``message_start`` frame has been emitted."""
        return self.state is not TranslatorState.AWAITING_START

    @property
    def done(self) -> bool:
        return self.state is TranslatorState.DONE

    @property
    def streamed_text(self) -> str:
        """Text forwarded through deltas so far."""
        return "".join(self._streamed_text)

    @property
    def result_text(self) -> str:
        """Best final text for the turn.

        The terminal record's text is used unless it is missing or shorter
        than what was actually streamed.
        """
        streamed = self.streamed_text
        final = self.result.text if self.result is not None else ""
        if final and len(final) >= len(streamed):
            return final
        return streamed

    def feed(self, record: RawRecord) -> list[Frame]:
        """Consume one record and return the frames it produces."""
        if record.session_id:
            self.session_id = record.session_id

        if self.done:
            return []

        match record:
            case StreamEventRecord():
                if record.is_nested:
                    return []
                return self._on_stream_event(record)
            case ResultRecord():
                return self._on_result(record)
            case SystemRecord() | OtherRecord():
                return []
        return []

    def finish(self) -> list[Frame]:
        """Close the envelope when the stream ended without a result record."""
        if self.done:
            return []
        logger.warning("%s: stream ended without a result record", self.message_id)
        if not self.started:
            self.state = TranslatorState.DONE
            return synthesize_envelope(self.message_id, self.model, self.result_text)
        return self._close()

    def abort(self) -> list[Frame]:
        """Close an already-started envelope after a failure."""
        if self.done or not self.started:
            return []
        return self._close()

    # ------------------------------------------------------------------ #
    # Stream events
    # ------------------------------------------------------------------ #

    def _on_stream_event(self, record: StreamEventRecord) -> list[Frame]:
        event = record.event
        match event:
            case MessageStartEvent():
                return self._on_message_start(event)
            case ContentBlockStartEvent():
                return self._on_block_start(event)
            case ContentBlockDeltaEvent():
                return self._on_block_delta(event)
            case ContentBlockStopEvent():
                return self._on_block_stop(event)
            case MessageDeltaEvent() | MessageStopEvent():
                return []
            case PingEvent():
                return [PingEvent()] if self.started else []
            case UnknownProtocolEvent():
                logger.debug("%s: ignoring stream event %r", self.message_id, event.type)
                return []
        return []

    def _on_message_start(self, event: MessageStartEvent) -> list[Frame]:
        if self.started:
            logger.debug("%s: dropping duplicate message_start", self.message_id)
            return []
        message = {**_message_shell(self.message_id, self.model), **event.message}
        message["id"] = self.message_id
        self.state = TranslatorState.IN_BODY
        return [MessageStartEvent(message=message)]

    def _on_block_start(self, event: ContentBlockStartEvent) -> list[Frame]:
        if self.state is not TranslatorState.IN_BODY:
            return []
        if event.block_type != "text":
            return []
        frames: list[Frame] = []
        if self._open_block is not None:
            # Upstream opened a new block without closing the last one.
            frames.append(ContentBlockStopEvent(index=self._open_block[1]))
        index = self._next_index
        self._next_index += 1
        self._open_block = (event.index, index)
        frames.append(event.model_copy(update={"index": index}))
        return frames

    def _on_block_delta(self, event: ContentBlockDeltaEvent) -> list[Frame]:
        if self._open_block is None or event.index != self._open_block[0]:
            return []
        if event.delta_type != "text_delta":
            return []
        self._streamed_text.append(event.text)
        return [event.model_copy(update={"index": self._open_block[1]})]

    def _on_block_stop(self, event: ContentBlockStopEvent) -> list[Frame]:
        if self._open_block is None or event.index != self._open_block[0]:
            return []
        index = self._open_block[1]
        self._open_block = None
        return [event.model_copy(update={"index": index})]

    # ------------------------------------------------------------------ #
    # Terminal record
    # ------------------------------------------------------------------ #

    def _on_result(self, record: ResultRecord) -> list[Frame]:
        self.result = record
        if record.is_error:
            logger.warning(
                "%s: result record flagged as error (%s)",
                self.message_id,
                record.subtype or "no subtype",
            )
        output_tokens = _output_tokens(record)

        if not self.started:
            self.state = TranslatorState.DONE
            return synthesize_envelope(
                self.message_id, self.model, self.result_text, output_tokens
            )
        return self._close(output_tokens)

    def _close(self, output_tokens: int = 0) -> list[Frame]:
        frames: list[Frame] = []
        if self._open_block is not None:
            frames.append(ContentBlockStopEvent(index=self._open_block[1]))
            self._open_block = None
        frames.extend(_terminal_pair(output_tokens))
        self.state = TranslatorState.DONE
        return frames


def _output_tokens(record: ResultRecord) -> int:
    value = record.usage.get("output_tokens")
    return value if isinstance(value, int) else 0
