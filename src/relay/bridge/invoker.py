"""Process invoker — spawns the CLI tool once per turn and supervises it.

Each invocation owns one child process and the timers that bound its
lifetime:

* **idle deadline** — reset on every chunk of stdout, and whenever the
  liveness probe sees the child has children of its own (a long tool
  call is quiet but alive);
* **hard deadline** — absolute ceiling regardless of activity.

Either deadline triggers SIGTERM to the child's process group, escalating
to SIGKILL after a grace window.  All timers are tasks owned by the :class:`SubprocessHandle` and
are cancelled once exit is confirmed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from relay.bridge.drainer import DEFAULT_SETTLE_INTERVAL, EventStreamDrainer
from relay.bridge.events import RawRecord
from relay.bridge.helpers import format_stderr_preview
from relay.config.models import CLIConfig
from relay.constants import DEFAULT_CLI_BINARY
from relay.liveness import has_active_children

logger = logging.getLogger(__name__)

#: Bytes requested per read from the child's pipes.
_CHUNK_BYTES = 65_536

#: Seconds to wait for the pipe readers after the process has exited.
_IO_SETTLE_WAIT = 2.0

#: Env vars that mark "already running inside a CLI session".
NESTED_SESSION_KEYS = frozenset({"CLAUDECODE", "CLAUDE_DEV"})

#: Env var prefixes with the same meaning.
NESTED_SESSION_PREFIXES = ("CLAUDE_CODE_", "CLAUDE_AGENT_")

#: Probe signature: ``probe(pid) -> has live children``.
LivenessProbe = Callable[[int], bool]


# ------------------------------------------------------------------ #
# Errors
# ------------------------------------------------------------------ #


class InvocationError(Exception):
    """The CLI could not be started or exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CLINotFoundError(InvocationError):
    """The CLI binary is not installed or not on ``PATH``."""


class InvocationTimeout(InvocationError):
    """The idle or hard deadline was exceeded and the process was terminated."""

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, returncode=returncode, stderr=stderr)
        self.reason = reason


# ------------------------------------------------------------------ #
# Request, arguments, environment
# ------------------------------------------------------------------ #


class InvocationRequest(BaseModel):
    """Everything needed to spawn one CLI turn."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    prompt: str = Field(description="Prompt text passed via -p")
    system_prompt: str | None = Field(
        default=None,
        description="Appended to the tool's own system prompt",
    )
    allowed_tools: str | None = Field(
        default=None,
        description="Comma-separated tool allow-list",
    )
    model: str | None = Field(default=None, description="Model override")
    resume_session_id: str | None = Field(
        default=None,
        description="Internal session identifier to resume",
    )
    continue_session: bool = Field(
        default=False,
        description="Continue the most recent session (ignored when resuming by id)",
    )
    max_budget_usd: float | None = Field(default=None, description="Spending ceiling")


def build_args(request: InvocationRequest) -> list[str]:
    """Build the CLI argument list (without the binary) for *request*."""
    args = [
        "-p",
        request.prompt,
        "--output-format",
        "stream-json",
        "--verbose",
        "--include-partial-messages",
    ]

    if request.allowed_tools:
        args.extend(["--allowedTools", request.allowed_tools])

    if request.system_prompt:
        args.extend(["--append-system-prompt", request.system_prompt])

    if request.model:
        args.extend(["--model", request.model])

    if request.resume_session_id:
        args.extend(["--resume", request.resume_session_id])
    elif request.continue_session:
        args.append("--continue")

    if request.max_budget_usd:
        args.extend(["--max-budget-usd", f"{request.max_budget_usd:g}"])

    return args


def is_nested_session_key(key: str) -> bool:
    """Return ``True`` if *key* tells the CLI it runs inside another session."""
    return key in NESTED_SESSION_KEYS or key.startswith(NESTED_SESSION_PREFIXES)


def sanitize_environment(
    base: Mapping[str, str],
    extra_keys: Iterable[str] = (),
) -> dict[str, str]:
    """Return a copy of *base* without nested-session markers or *extra_keys*.

    Never mutates *base*.
    """
    extra = set(extra_keys)
    return {
        k: v for k, v in base.items() if not is_nested_session_key(k) and k not in extra
    }


# ------------------------------------------------------------------ #
# In-flight subprocess
# ------------------------------------------------------------------ #


class SubprocessHandle:
    """One spawned CLI process plus its pipe readers and deadline timers."""

    def __init__(
        self,
        proc: Any,
        *,
        label: str,
        idle_timeout: float,
        hard_timeout: float,
        liveness_interval: float,
        kill_grace: float,
        settle_interval: float,
        probe: LivenessProbe | None,
    ) -> None:
        self._proc = proc
        self.pid: int | None = getattr(proc, "pid", None)
        self.label = label
        self.stderr_text = ""
        self.returncode: int | None = None

        self._idle_timeout = idle_timeout
        self._hard_timeout = hard_timeout
        self._liveness_interval = liveness_interval
        self._kill_grace = kill_grace
        self._probe = probe

        self._loop = asyncio.get_running_loop()
        self._last_activity = self._loop.time()
        self._timeout_reason: str | None = None

        self.drainer = EventStreamDrainer(
            settle_interval=settle_interval,
            on_activity=self.touch,
            label=label,
        )
        self._io_tasks: list[asyncio.Task[None]] = []
        self._timer_tasks: list[asyncio.Task[None]] = []

    @property
    def timed_out(self) -> str | None:
        """``"idle"`` or ``"hard"`` once a deadline fired, else ``None``."""
        return self._timeout_reason

    def start(self) -> None:
        """Start the pipe readers and the deadline timers."""
        self._io_tasks = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
        ]
        self._timer_tasks = [
            asyncio.create_task(self._idle_watchdog()),
            asyncio.create_task(self._hard_deadline()),
        ]
        if self._probe is not None and self.pid is not None:
            self._timer_tasks.append(asyncio.create_task(self._liveness_loop()))

    def touch(self) -> None:
        """Push the idle deadline out by a full ``idle_timeout``."""
        self._last_activity = self._loop.time()

    async def wait_for_exit(self) -> int:
        """Confirm process exit, dispose of timers, and check the exit code.

        Raises:
            InvocationTimeout: If a deadline terminated the process.
            InvocationError: On a non-zero exit code.
        """
        try:
            returncode = await self._proc.wait()
            # After a deadline kill, surviving descendants may still hold the pipes.
            settle = self._kill_grace if self._timeout_reason else _IO_SETTLE_WAIT
            _, pending = await asyncio.wait(self._io_tasks, timeout=settle)
            for task in pending:
                task.cancel()
        finally:
            for task in self._timer_tasks:
                task.cancel()
            await asyncio.gather(*self._timer_tasks, return_exceptions=True)

        self.returncode = returncode
        logger.info("%s: process %s exited with code %s", self.label, self.pid, returncode)
        stderr_text = self.stderr_text.strip()

        if self._timeout_reason is not None:
            limit = (
                self._idle_timeout if self._timeout_reason == "idle" else self._hard_timeout
            )
            msg = (
                f"{self.label} terminated after exceeding the "
                f"{self._timeout_reason} deadline ({limit:g}s)"
            )
            raise InvocationTimeout(
                msg,
                reason=self._timeout_reason,
                returncode=returncode,
                stderr=stderr_text,
            )

        if returncode != 0:
            if stderr_text:
                preview = format_stderr_preview(stderr_text)
                msg = f"{self.label} exited with code {returncode}: {preview}"
            else:
                msg = f"{self.label} exited with code {returncode} without error output"
            raise InvocationError(msg, returncode=returncode, stderr=stderr_text)

        return returncode

    # ------------------------------------------------------------------ #
    # Pipe readers
    # ------------------------------------------------------------------ #

    async def _pump_stdout(self) -> None:
        stdout = self._proc.stdout
        try:
            if stdout is None:
                return
            while chunk := await stdout.read(_CHUNK_BYTES):
                self.drainer.feed(chunk)
        except (OSError, ValueError) as exc:
            logger.error("%s: error reading stdout: %s", self.label, exc)
        finally:
            self.drainer.feed_eof()

    async def _pump_stderr(self) -> None:
        stderr = self._proc.stderr
        if stderr is None:
            return
        try:
            while chunk := await stderr.read(_CHUNK_BYTES):
                text = chunk.decode(errors="replace")
                self.stderr_text += text
                logger.debug("%s stderr: %s", self.label, text.strip())
        except (OSError, ValueError) as exc:
            logger.error("%s: error reading stderr: %s", self.label, exc)

    # ------------------------------------------------------------------ #
    # Deadlines
    # ------------------------------------------------------------------ #

    async def _idle_watchdog(self) -> None:
        while True:
            remaining = self._last_activity + self._idle_timeout - self._loop.time()
            if remaining <= 0:
                await self._terminate("idle")
                return
            await asyncio.sleep(remaining)

    async def _hard_deadline(self) -> None:
        await asyncio.sleep(self._hard_timeout)
        await self._terminate("hard")

    async def _liveness_loop(self) -> None:
        assert self._probe is not None and self.pid is not None
        while True:
            await asyncio.sleep(self._liveness_interval)
            try:
                active = await asyncio.to_thread(self._probe, self.pid)
            except OSError as exc:
                logger.warning("%s: liveness probe failed: %s", self.label, exc)
                continue
            if active:
                logger.debug(
                    "%s: active child processes detected, resetting idle timer",
                    self.label,
                )
                self.touch()

    async def _terminate(self, reason: str) -> None:
        """SIGTERM the process group, then SIGKILL after ``kill_grace`` seconds.

        Once the child is gone the stdout stream is ended by hand: a
        grandchild that inherited the pipe can otherwise keep it open
        long after the deadline.
        """
        proc = self._proc
        if self._timeout_reason is not None:
            return
        if proc.returncode is not None and self.drainer.at_eof:
            return
        self._timeout_reason = reason
        if proc.returncode is None:
            logger.error(
                "%s: %s deadline reached, terminating process %s",
                self.label,
                reason,
                self.pid,
            )
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
            except TimeoutError:
                logger.error(
                    "%s: process %s ignored SIGTERM, killing", self.label, self.pid
                )
                self._signal(signal.SIGKILL)
                await proc.wait()
        else:
            logger.error(
                "%s: %s deadline reached after process %s exited, "
                "killing leftover process group",
                self.label,
                reason,
                self.pid,
            )
            self._signal(signal.SIGKILL)
        self.drainer.feed_eof()

    def _signal(self, sig: signal.Signals) -> None:
        """Send ``sig`` to the child's process group and to the child itself."""
        if self.pid is not None:
            # The child leads its own session, so its pid is the group id.
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self.pid, sig)
        if self._proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            if sig == signal.SIGKILL:
                self._proc.kill()
            else:
                self._proc.terminate()


# ------------------------------------------------------------------ #
# Invoker
# ------------------------------------------------------------------ #


class ProcessInvoker:
    """Spawns the CLI tool per turn; one child process per invocation."""

    def __init__(
        self,
        binary: str = DEFAULT_CLI_BINARY,
        *,
        idle_timeout: float = 600.0,
        hard_timeout: float = 86_400.0,
        liveness_interval: float = 30.0,
        kill_grace: float = 3.0,
        settle_interval: float = DEFAULT_SETTLE_INTERVAL,
        stripped_env_keys: Iterable[str] = (),
        probe: LivenessProbe | None = has_active_children,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.binary = binary
        self._idle_timeout = idle_timeout
        self._hard_timeout = hard_timeout
        self._liveness_interval = liveness_interval
        self._kill_grace = kill_grace
        self._settle_interval = settle_interval
        self._stripped_env_keys = tuple(stripped_env_keys)
        self._probe = probe
        self._base_env = base_env
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(cls, config: CLIConfig, **kwargs: Any) -> ProcessInvoker:
        return cls(
            config.binary,
            idle_timeout=config.idle_timeout,
            hard_timeout=config.hard_timeout,
            liveness_interval=config.liveness_interval,
            kill_grace=config.kill_grace,
            settle_interval=config.settle_interval,
            stripped_env_keys=config.stripped_env_keys,
            **kwargs,
        )

    def build_command(self, request: InvocationRequest) -> list[str]:
        return [self.binary, *build_args(request)]

    def build_env(self) -> dict[str, str]:
        base = self._base_env if self._base_env is not None else os.environ
        return sanitize_environment(base, self._stripped_env_keys)

    async def spawn(self, request: InvocationRequest) -> SubprocessHandle:
        """Start the CLI for *request* and return its running handle.

        Raises:
            CLINotFoundError: If the binary cannot be found.
            InvocationError: If the process cannot be spawned.
        """
        cmd_args = self.build_command(request)
        logger.info(
            "Spawning %s (%s)",
            self.binary,
            f"resuming {request.resume_session_id}"
            if request.resume_session_id
            else "new session",
        )
        logger.debug("Command: %s", " ".join(cmd_args)[:200])

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd_args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            msg = (
                f"CLI binary '{self.binary}' not found. "
                "Make sure it is installed and on your PATH."
            )
            raise CLINotFoundError(msg) from exc
        except OSError as exc:
            msg = f"Failed to spawn {self.binary}: {exc}"
            raise InvocationError(msg) from exc

        handle = SubprocessHandle(
            proc,
            label=self.binary,
            idle_timeout=self._idle_timeout,
            hard_timeout=self._hard_timeout,
            liveness_interval=self._liveness_interval,
            kill_grace=self._kill_grace,
            settle_interval=self._settle_interval,
            probe=self._probe,
        )
        handle.start()
        logger.info("%s: process spawned, pid %s", self.binary, handle.pid)
        return handle

    async def invoke(self, request: InvocationRequest) -> AsyncIterator[RawRecord]:
        """Run one turn, yielding raw records, then confirm exit.

        The exit check happens only after the drain phase, so a caller that
        exhausts this generator knows the tool's finalisation is complete.
        If the caller stops iterating early, the process is not killed: exit
        confirmation continues in the background.
        """
        handle = await self.spawn(request)
        completed = False
        try:
            async for record in handle.drainer:
                yield record
            completed = True
        finally:
            if not completed:
                self._finish_in_background(handle)
        await handle.wait_for_exit()

    def _finish_in_background(self, handle: SubprocessHandle) -> None:
        task = asyncio.create_task(self._finish(handle))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _finish(self, handle: SubprocessHandle) -> None:
        try:
            await handle.wait_for_exit()
        except InvocationError as exc:
            logger.error("%s: detached invocation failed: %s", handle.label, exc)
