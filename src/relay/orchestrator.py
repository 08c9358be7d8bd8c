"""Request orchestrator — one conversational turn, end to end.

Resolves the caller's conversation to a resumable CLI session, runs the
CLI through the translator, and records the session id the CLI reports
so the next turn can resume it.

Retry policy:

* a failed attempt that carried a resume id is retried once as a fresh
  conversation, and the stale mapping is removed from the store;
* other invocation failures are retried up to ``max_retries`` times with
  a linear backoff;
* timeouts and a missing binary are never retried;
* in streaming mode nothing is retried once a frame has been sent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from relay.bridge.events import Frame, RawRecord
from relay.bridge.helpers import new_message_id
from relay.bridge.invoker import (
    CLINotFoundError,
    InvocationError,
    InvocationRequest,
    InvocationTimeout,
)
from relay.bridge.translator import ProtocolTranslator, synthesize_envelope
from relay.config.models import RelayConfig
from relay.constants import DEFAULT_MODEL, EMPTY_RESPONSE_TEXT
from relay.session.store import SessionStore

logger = logging.getLogger(__name__)

#: Text of the canned reply to connectivity checks.
PING_REPLY = "OK"

#: Unread frames held for a streaming caller before it is treated as gone.
MAX_FRAME_BACKLOG = 10_000


class Invoker(Protocol):
    """Anything that can run one CLI turn and yield its raw records."""

    def invoke(self, request: InvocationRequest) -> AsyncIterator[RawRecord]: ...


# ------------------------------------------------------------------ #
# Boundary models
# ------------------------------------------------------------------ #


class HistoryMessage(BaseModel):
    """An earlier message of the conversation, as text."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    text: str


class TurnRequest(BaseModel):
    """What the routing layer hands the core for one turn."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    prompt: str = Field(description="Latest user message")
    history: list[HistoryMessage] = Field(
        default_factory=list,
        description="Earlier messages, oldest first",
    )
    system_prompt: str | None = None
    allowed_tools: str | None = None
    model: str | None = None
    external_id: str | None = Field(
        default=None,
        description="Conversation key used for session continuity",
    )
    stream: bool = False
    max_tokens: int | None = None
    max_budget_usd: float | None = None


class MessageResponse(BaseModel):
    """Buffered-mode success, shaped as a Messages-API message."""

    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    content: list[dict[str, Any]]
    model: str
    stop_reason: str | None = "end_turn"
    stop_sequence: str | None = None
    usage: dict[str, int] = Field(
        default_factory=lambda: {"input_tokens": 0, "output_tokens": 0}
    )

    @property
    def text(self) -> str:
        return "".join(
            str(block.get("text", "")) for block in self.content if block.get("type") == "text"
        )


class ErrorResponse(BaseModel):
    """Buffered-mode failure."""

    type: Literal["error"] = "error"
    error: dict[str, str]


class TurnFailedError(Exception):
    """A turn failed after every permitted retry."""


@dataclass
class TurnResult:
    """Outcome of a buffered turn."""

    response: MessageResponse
    session_id: str | None
    cost_usd: float | None = None

    @property
    def text(self) -> str:
        return self.response.text


def build_prompt(turn: TurnRequest, *, resuming: bool) -> str:
    """Prompt text for *turn*.

    A resumed session already holds the history, so only the latest
    message is sent.  A fresh session with history gets it inlined.
    """
    if resuming or not turn.history:
        return turn.prompt
    parts = [
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.text}" for m in turn.history
    ]
    history = "\n\n".join(parts)
    return f"[Previous conversation]\n{history}\n\n[Current message]\n{turn.prompt}"


# ------------------------------------------------------------------ #
# Orchestrator
# ------------------------------------------------------------------ #


@dataclass
class _AttemptState:
    resume_id: str | None
    retries_left: int
    retry: int = 0


class _FrameSink:
    """Hands frames to the caller until the caller goes away.

    A caller that abandons the iterator without closing it never tells
    the sink, so once ``max_backlog`` frames sit unread the sink detaches
    on its own and later frames are dropped.
    """

    def __init__(self, max_backlog: int = MAX_FRAME_BACKLOG) -> None:
        self.queue: asyncio.Queue[Frame | None] = asyncio.Queue()
        self.detached = False
        self._max_backlog = max_backlog

    def emit(self, frames: Iterable[Frame]) -> None:
        for frame in frames:
            if self.detached:
                return
            if self.queue.qsize() >= self._max_backlog:
                logger.warning(
                    "Caller stopped reading after %d unread frames, "
                    "turn continues in the background",
                    self.queue.qsize(),
                )
                self.detach()
                return
            self.queue.put_nowait(frame)

    def detach(self) -> None:
        self.detached = True

    def close(self) -> None:
        self.queue.put_nowait(None)


class RequestOrchestrator:
    """Runs turns against the CLI with session continuity and retries."""

    def __init__(
        self,
        invoker: Invoker,
        store: SessionStore,
        *,
        allowed_tools: str | None = None,
        cli_model: str | None = None,
        max_budget_usd: float | None = None,
        default_model: str = DEFAULT_MODEL,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        ping_max_chars: int = 0,
    ) -> None:
        self._invoker = invoker
        self._store = store
        self._allowed_tools = allowed_tools
        self._cli_model = cli_model
        self._max_budget_usd = max_budget_usd
        self._default_model = default_model
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._ping_max_chars = ping_max_chars
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls, config: RelayConfig, invoker: Invoker, store: SessionStore
    ) -> RequestOrchestrator:
        return cls(
            invoker,
            store,
            allowed_tools=config.cli.allowed_tools,
            cli_model=config.cli.model,
            max_budget_usd=config.cli.max_budget_usd,
            default_model=config.default_model,
            max_retries=config.retry.max_retries,
            retry_backoff=config.retry.backoff_seconds,
            ping_max_chars=config.ping.max_chars,
        )

    # ------------------------------------------------------------------ #
    # Buffered mode
    # ------------------------------------------------------------------ #

    async def complete(self, turn: TurnRequest) -> TurnResult:
        """Run *turn* to completion and return the final message.

        Raises:
            TurnFailedError: When every permitted attempt failed.
        """
        message_id = new_message_id()
        model = turn.model or self._default_model

        if self._is_ping(turn):
            logger.info("Verification ping detected, returning canned reply")
            return TurnResult(
                response=self._message(message_id, model, PING_REPLY, 1),
                session_id=None,
            )

        state = self._resolve(turn)
        while True:
            translator = ProtocolTranslator(message_id, model)
            request = self._build_request(turn, state.resume_id)
            try:
                async for record in self._invoker.invoke(request):
                    translator.feed(record)
                translator.finish()
            except InvocationError as exc:
                logger.error("Turn attempt failed: %s", exc)
                if await self._should_retry(turn, state, exc):
                    continue
                raise TurnFailedError(str(exc)) from exc
            break

        self._remember(turn, translator.session_id)
        result = translator.result
        output_tokens = 0
        if result is not None and isinstance(result.usage.get("output_tokens"), int):
            output_tokens = result.usage["output_tokens"]
        text = translator.result_text or EMPTY_RESPONSE_TEXT
        logger.info(
            "Turn done: %d chars, session %s", len(text), translator.session_id or "none"
        )
        return TurnResult(
            response=self._message(message_id, model, text, output_tokens),
            session_id=translator.session_id,
            cost_usd=result.cost if result is not None else None,
        )

    async def respond(self, turn: TurnRequest) -> MessageResponse | ErrorResponse:
        """Buffered entry point for the routing layer; never raises on failure."""
        try:
            result = await self.complete(turn)
        except TurnFailedError as exc:
            return ErrorResponse(error={"type": "api_error", "message": str(exc)})
        return result.response

    # ------------------------------------------------------------------ #
    # Streaming mode
    # ------------------------------------------------------------------ #

    async def stream(self, turn: TurnRequest) -> AsyncIterator[Frame]:
        """Yield outbound frames for *turn*.

        Always yields a complete envelope, synthesizing one that carries the
        error text if the turn fails before any frame was sent.  If the
        caller stops iterating, the turn keeps running in the background and
        its session id is still recorded.  Callers that may stop early
        should close the iterator, e.g. with :func:`contextlib.aclosing`.
        """
        sink = _FrameSink()
        task = asyncio.create_task(self._run_stream(turn, sink))
        self._track(task)
        try:
            while (frame := await sink.queue.get()) is not None:
                yield frame
        finally:
            if not task.done():
                sink.detach()
                logger.info("Caller disconnected, turn continues in the background")

    async def join(self) -> None:
        """Wait for turns still running after their caller went away."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _run_stream(self, turn: TurnRequest, sink: _FrameSink) -> None:
        message_id = new_message_id()
        model = turn.model or self._default_model
        try:
            if self._is_ping(turn):
                logger.info("Verification ping detected, returning canned reply")
                sink.emit(synthesize_envelope(message_id, model, PING_REPLY, 1))
                return

            state = self._resolve(turn)
            while True:
                translator = ProtocolTranslator(message_id, model)
                request = self._build_request(turn, state.resume_id)
                try:
                    async for record in self._invoker.invoke(request):
                        sink.emit(translator.feed(record))
                    sink.emit(translator.finish())
                except InvocationError as exc:
                    logger.error("Stream attempt failed: %s", exc)
                    if translator.started:
                        sink.emit(translator.abort())
                        return
                    if await self._should_retry(turn, state, exc):
                        continue
                    sink.emit(synthesize_envelope(message_id, model, f"Error: {exc}"))
                    return
                break

            self._remember(turn, translator.session_id)
        finally:
            sink.close()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _is_ping(self, turn: TurnRequest) -> bool:
        if self._ping_max_chars <= 0:
            return False
        if turn.max_tokens is not None and turn.max_tokens <= 1:
            return True
        return len(turn.prompt.strip()) <= self._ping_max_chars

    def _resolve(self, turn: TurnRequest) -> _AttemptState:
        resume_id = None
        if turn.external_id:
            record = self._store.lookup(turn.external_id)
            if record is not None:
                resume_id = record.internal_id
        logger.info(
            "Turn for %s: %s",
            turn.external_id or "anonymous caller",
            f"resuming {resume_id}" if resume_id else "new session",
        )
        return _AttemptState(resume_id=resume_id, retries_left=self._max_retries)

    def _build_request(
        self, turn: TurnRequest, resume_id: str | None
    ) -> InvocationRequest:
        return InvocationRequest(
            prompt=build_prompt(turn, resuming=resume_id is not None),
            system_prompt=turn.system_prompt,
            allowed_tools=turn.allowed_tools or self._allowed_tools,
            model=turn.model or self._cli_model,
            resume_session_id=resume_id,
            max_budget_usd=turn.max_budget_usd or self._max_budget_usd,
        )

    async def _should_retry(
        self, turn: TurnRequest, state: _AttemptState, exc: InvocationError
    ) -> bool:
        if isinstance(exc, InvocationTimeout):
            logger.error("Not retrying after %s timeout", exc.reason)
            return False

        if state.resume_id is not None:
            logger.warning(
                "Resume of %s failed, retrying as a fresh session", state.resume_id
            )
            if turn.external_id:
                self._store.remove(turn.external_id)
            state.resume_id = None
            await asyncio.sleep(self._retry_backoff)
            return True

        if isinstance(exc, CLINotFoundError) or state.retries_left <= 0:
            return False

        state.retries_left -= 1
        state.retry += 1
        logger.warning("Retrying turn (%d/%d)", state.retry, self._max_retries)
        await asyncio.sleep(self._retry_backoff * state.retry)
        return True

    def _remember(self, turn: TurnRequest, session_id: str | None) -> None:
        if turn.external_id and session_id:
            self._store.upsert(turn.external_id, session_id)

    def _message(
        self, message_id: str, model: str, text: str, output_tokens: int
    ) -> MessageResponse:
        return MessageResponse(
            id=message_id,
            content=[{"type": "text", "text": text}],
            model=model,
            usage={"input_tokens": 0, "output_tokens": output_tokens},
        )

    def _track(self, task: asyncio.Task[None]) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Streaming turn crashed: %s", exc, exc_info=exc)
