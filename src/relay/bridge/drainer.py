"""Event stream drainer — newline-delimited JSON with a post-EOF drain phase.

The CLI tool runs its own finalisation (stop hooks) after emitting the
terminal ``result`` record, and that work may flush more lines to the
same stream after the line reader has already seen end-of-input.  The
drainer therefore keeps every raw byte in one buffer and tracks how far
the line reader has consumed it:

1. **stream** — yield complete lines as soon as they are in the buffer;
2. **drain**  — once end-of-input is reported, wait ``settle_interval``
   and re-scan the buffer from the consumed offset, yielding whatever
   accumulated meanwhile;
3. the caller then confirms process exit (see ``invoker.py``).

Producer side mirrors :class:`asyncio.StreamReader`: ``feed()`` and
``feed_eof()``.  Unlike ``StreamReader``, bytes fed after ``feed_eof()``
are still captured.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable

from pydantic import ValidationError

from relay.bridge.events import RawRecord, parse_record

logger = logging.getLogger(__name__)

#: Maximum bytes per JSONL line (1 MB).  Longer lines are skipped.
MAX_LINE_BYTES = 1_048_576

#: Default seconds to wait for late output after end-of-input.
DEFAULT_SETTLE_INTERVAL = 0.1

#: Consumed bytes kept before the buffer's head is discarded.
COMPACT_BYTES = 65_536


class EventStreamDrainer:
    """Turns raw stdout bytes into :data:`RawRecord` values.

    Iterate with ``async for record in drainer``.  A drainer is single-use.
    """

    def __init__(
        self,
        *,
        settle_interval: float = DEFAULT_SETTLE_INTERVAL,
        on_activity: Callable[[], None] | None = None,
        max_line_bytes: int = MAX_LINE_BYTES,
        label: str = "cli",
    ) -> None:
        self._settle_interval = settle_interval
        self._on_activity = on_activity
        self._max_line_bytes = max_line_bytes
        self._label = label

        self._buffer = bytearray()
        self._consumed = 0
        self._eof = False
        self._data_ready = asyncio.Event()
        self._iterated = False

        self.record_count = 0
        self.drained_count = 0

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #

    def feed(self, chunk: bytes) -> None:
        """Append raw bytes to the capture buffer."""
        if not chunk:
            return
        self._buffer.extend(chunk)
        if self._on_activity is not None:
            self._on_activity()
        self._data_ready.set()

    def feed_eof(self) -> None:
        """Report end-of-input for the line reader."""
        self._eof = True
        self._data_ready.set()

    @property
    def at_eof(self) -> bool:
        return self._eof

    @property
    def pending_bytes(self) -> int:
        """Bytes captured but not yet consumed as lines."""
        return len(self._buffer) - self._consumed

    @property
    def buffered_bytes(self) -> int:
        """Bytes currently held in the buffer, consumed or not."""
        return len(self._buffer)

    # ------------------------------------------------------------------ #
    # Consumer side
    # ------------------------------------------------------------------ #

    def __aiter__(self) -> AsyncIterator[RawRecord]:
        if self._iterated:
            msg = "EventStreamDrainer can only be iterated once"
            raise RuntimeError(msg)
        self._iterated = True
        return self._records()

    async def _records(self) -> AsyncIterator[RawRecord]:
        # Stream phase.
        while True:
            line = self._next_line(final=False)
            if line is not None:
                record = self._decode(line, phase="stream")
                if record is not None:
                    self.record_count += 1
                    yield record
                continue
            if self._eof:
                break
            self._data_ready.clear()
            await self._data_ready.wait()

        # Drain phase.
        if self._settle_interval > 0:
            await asyncio.sleep(self._settle_interval)
        while (line := self._next_line(final=True)) is not None:
            record = self._decode(line, phase="drain")
            if record is not None:
                self.record_count += 1
                self.drained_count += 1
                yield record

        if self.drained_count:
            logger.info(
                "%s: drained %d record(s) after end of stream",
                self._label,
                self.drained_count,
            )
        logger.debug("%s: stream ended, %d record(s)", self._label, self.record_count)

    def _next_line(self, *, final: bool) -> bytes | None:
        """Pop the next line from the buffer.

        With ``final=True`` a trailing unterminated line is returned too.
        """
        if self._consumed >= len(self._buffer):
            return None
        newline = self._buffer.find(b"\n", self._consumed)
        if newline == -1:
            if not final:
                return None
            line = bytes(self._buffer[self._consumed :])
            self._consumed = len(self._buffer)
        else:
            line = bytes(self._buffer[self._consumed : newline])
            self._consumed = newline + 1
        if self._consumed >= COMPACT_BYTES:
            del self._buffer[: self._consumed]
            self._consumed = 0
        return line

    def _decode(self, line: bytes, *, phase: str) -> RawRecord | None:
        if len(line) > self._max_line_bytes:
            logger.warning(
                "%s: stdout line exceeds %d bytes, skipping",
                self._label,
                self._max_line_bytes,
            )
            return None

        text = line.decode(errors="replace").strip()
        if not text:
            return None

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("%s: non-JSON %s output: %s", self._label, phase, text[:200])
            return None

        if not isinstance(data, dict):
            logger.warning(
                "%s: expected a JSON object, got %s", self._label, type(data).__name__
            )
            return None

        try:
            record = parse_record(data)
        except ValidationError as exc:
            logger.warning(
                "%s: unexpected %r record shape: %s",
                self._label,
                data.get("type"),
                exc.errors()[0]["msg"] if exc.errors() else exc,
            )
            return None

        logger.debug("%s: %s record: %s", self._label, phase, record.type)
        return record
