"""Tests for the process invoker and its deadline supervision."""

from __future__ import annotations

import asyncio
import json
import os
import signal
from collections.abc import Iterator
from contextlib import aclosing
from typing import Any
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from relay.bridge.events import RawRecord, ResultRecord
from relay.bridge.invoker import (
    CLINotFoundError,
    InvocationError,
    InvocationRequest,
    InvocationTimeout,
    ProcessInvoker,
    build_args,
    is_nested_session_key,
    sanitize_environment,
)
from relay.config.models import CLIConfig

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class MockAsyncPipe:
    """Async-aware mock pipe.  ``read()`` blocks until data or ``close()``."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        """Signal EOF."""
        self._queue.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        return await self._queue.get()


class MockProcess:
    """Stand-in for ``asyncio.subprocess.Process``.

    The process "runs" until :meth:`exit` is called, or until it is
    signalled.  With ``ignore_sigterm`` only ``kill()`` ends it.  With
    ``stdout_held`` the stdout pipe stays open after exit, as when a
    grandchild inherited it.
    """

    def __init__(
        self,
        returncode: int = 0,
        stderr: bytes = b"",
        pid: int = 4242,
        ignore_sigterm: bool = False,
        stdout_held: bool = False,
    ) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = MockAsyncPipe()
        self.stderr = MockAsyncPipe()
        if stderr:
            self.stderr.feed(stderr)
        self._exit_code = returncode
        self._exited = asyncio.Event()
        self._ignore_sigterm = ignore_sigterm
        self._stdout_held = stdout_held
        self.terminate = MagicMock(side_effect=self._on_terminate)
        self.kill = MagicMock(side_effect=self._on_kill)

    def emit(self, *records: dict[str, Any]) -> None:
        for record in records:
            self.stdout.feed(json.dumps(record).encode() + b"\n")

    def exit(self, code: int | None = None) -> None:
        if self._exited.is_set():
            return
        if code is not None:
            self._exit_code = code
        self.returncode = self._exit_code
        if not self._stdout_held:
            self.stdout.close()
        self.stderr.close()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        self.returncode = self._exit_code
        return self._exit_code

    def _on_terminate(self) -> None:
        if not self._ignore_sigterm:
            self.exit(-15)

    def _on_kill(self) -> None:
        self.exit(-9)


@pytest.fixture(autouse=True)
def killpg() -> Iterator[MagicMock]:
    """Keep process-group signals away from real processes."""
    with patch("relay.bridge.invoker.os.killpg") as mock:
        yield mock


def _make_invoker(**kwargs: Any) -> ProcessInvoker:
    defaults: dict[str, Any] = {
        "idle_timeout": 5.0,
        "hard_timeout": 10.0,
        "liveness_interval": 1.0,
        "kill_grace": 0.5,
        "settle_interval": 0.0,
        "probe": lambda pid: False,
        "base_env": {"PATH": "/usr/bin", "HOME": "/home/test"},
    }
    defaults.update(kwargs)
    return ProcessInvoker("claude", **defaults)


async def _run(invoker: ProcessInvoker, request: InvocationRequest) -> list[RawRecord]:
    return [record async for record in invoker.invoke(request)]


_REQUEST = InvocationRequest(prompt="hello")

_RESULT = {"type": "result", "result": "hi there", "session_id": "sess-1"}


# ------------------------------------------------------------------ #
# Arguments and environment
# ------------------------------------------------------------------ #


class TestBuildArgs:
    def test_minimal(self) -> None:
        assert build_args(InvocationRequest(prompt="hi")) == [
            "-p",
            "hi",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]

    def test_all_options(self) -> None:
        args = build_args(InvocationRequest(
            prompt="hi",
            system_prompt="be brief",
            allowed_tools="Read,Bash",
            model="claude-opus",
            resume_session_id="sess-9",
            max_budget_usd=2.5,
        ))
        assert args[args.index("--allowedTools") + 1] == "Read,Bash"
        assert args[args.index("--append-system-prompt") + 1] == "be brief"
        assert args[args.index("--model") + 1] == "claude-opus"
        assert args[args.index("--resume") + 1] == "sess-9"
        assert args[args.index("--max-budget-usd") + 1] == "2.5"
        assert "--continue" not in args

    def test_continue_flag(self) -> None:
        args = build_args(InvocationRequest(prompt="hi", continue_session=True))
        assert "--continue" in args
        assert "--resume" not in args

    def test_resume_takes_precedence_over_continue(self) -> None:
        args = build_args(InvocationRequest(
            prompt="hi", resume_session_id="s", continue_session=True
        ))
        assert "--resume" in args
        assert "--continue" not in args


class TestSanitizeEnvironment:
    def test_strips_nested_session_markers(self) -> None:
        base = {
            "PATH": "/bin",
            "CLAUDECODE": "1",
            "CLAUDE_DEV": "1",
            "CLAUDE_CODE_ENTRYPOINT": "cli",
            "CLAUDE_AGENT_SDK_VERSION": "1.0",
            "CLAUDE_CONFIG_DIR": "/cfg",
        }
        env = sanitize_environment(base)
        assert env == {"PATH": "/bin", "CLAUDE_CONFIG_DIR": "/cfg"}

    def test_extra_keys_stripped(self) -> None:
        env = sanitize_environment(
            {"PATH": "/bin", "ANTHROPIC_API_KEY": "sk"}, ["ANTHROPIC_API_KEY"]
        )
        assert env == {"PATH": "/bin"}

    def test_does_not_mutate_input(self) -> None:
        base = {"CLAUDECODE": "1", "PATH": "/bin"}
        sanitize_environment(base)
        assert base == {"CLAUDECODE": "1", "PATH": "/bin"}

    def test_is_nested_session_key(self) -> None:
        assert is_nested_session_key("CLAUDECODE")
        assert is_nested_session_key("CLAUDE_CODE_SSE_PORT")
        assert not is_nested_session_key("CLAUDE")
        assert not is_nested_session_key("HOME")


# ------------------------------------------------------------------ #
# Spawning
# ------------------------------------------------------------------ #


class TestSpawn:
    async def test_spawn_arguments(self) -> None:
        proc = MockProcess()
        invoker = _make_invoker(
            base_env={"PATH": "/bin", "CLAUDECODE": "1", "SECRET": "x"},
            stripped_env_keys=["SECRET"],
        )
        mock_exec = AsyncMock(return_value=proc)

        with patch("asyncio.create_subprocess_exec", mock_exec):
            proc.emit(_RESULT)
            proc.exit(0)
            await _run(invoker, _REQUEST)

        args, kwargs = mock_exec.call_args
        assert args[0] == "claude"
        assert args[1:3] == ("-p", "hello")
        assert kwargs["env"] == {"PATH": "/bin"}
        assert kwargs["stdin"] == asyncio.subprocess.DEVNULL
        assert kwargs["start_new_session"] is True

    async def test_process_environment_untouched(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CLAUDECODE", "1")
        monkeypatch.setenv("CLAUDE_CODE_ENTRYPOINT", "cli")
        invoker = _make_invoker(base_env=None)

        env = invoker.build_env()

        assert "CLAUDECODE" not in env
        assert "CLAUDE_CODE_ENTRYPOINT" not in env
        assert "PATH" in env
        assert os.environ["CLAUDECODE"] == "1"

    async def test_binary_not_found(self) -> None:
        invoker = _make_invoker()
        with (
            patch(
                "asyncio.create_subprocess_exec",
                AsyncMock(side_effect=FileNotFoundError("claude")),
            ),
            pytest.raises(CLINotFoundError, match="not found"),
        ):
            await _run(invoker, _REQUEST)

    async def test_spawn_os_error(self) -> None:
        invoker = _make_invoker()
        with (
            patch(
                "asyncio.create_subprocess_exec",
                AsyncMock(side_effect=PermissionError("denied")),
            ),
            pytest.raises(InvocationError, match="Failed to spawn"),
        ):
            await _run(invoker, _REQUEST)

    def test_from_config(self) -> None:
        config = CLIConfig(binary="/opt/claude", idle_timeout=30, hard_timeout=60)
        invoker = ProcessInvoker.from_config(config)
        assert invoker.binary == "/opt/claude"
        assert invoker.build_command(_REQUEST)[0] == "/opt/claude"


# ------------------------------------------------------------------ #
# Records and exit
# ------------------------------------------------------------------ #


class TestInvoke:
    async def test_yields_records_then_confirms_exit(self) -> None:
        proc = MockProcess()
        invoker = _make_invoker()
        proc.emit(
            {"type": "system", "subtype": "init", "session_id": "sess-1"},
            {
                "type": "stream_event",
                "event": {"type": "message_start", "message": {}},
            },
            _RESULT,
        )
        proc.exit(0)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            records = await _run(invoker, _REQUEST)

        assert [r.type for r in records] == ["system", "stream_event", "result"]
        assert isinstance(records[-1], ResultRecord)
        proc.terminate.assert_not_called()

    async def test_records_after_result_are_delivered(self) -> None:
        proc = MockProcess()
        invoker = _make_invoker(settle_interval=0.05)
        proc.emit(_RESULT, {"type": "system", "subtype": "stop_hook"})
        proc.exit(0)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            records = await _run(invoker, _REQUEST)

        assert [r.type for r in records] == ["result", "system"]

    async def test_nonzero_exit_raises_with_stderr(self) -> None:
        proc = MockProcess(returncode=1, stderr=b"warming up\nError: bad session\n")
        invoker = _make_invoker()
        proc.exit()

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationError, match="bad session") as exc_info,
        ):
            await _run(invoker, _REQUEST)

        assert exc_info.value.returncode == 1
        assert "Error: bad session" in exc_info.value.stderr
        assert not isinstance(exc_info.value, InvocationTimeout)

    async def test_nonzero_exit_without_stderr(self) -> None:
        proc = MockProcess(returncode=2)
        invoker = _make_invoker()
        proc.exit()

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationError, match="without error output"),
        ):
            await _run(invoker, _REQUEST)

    async def test_early_stop_does_not_kill_process(self) -> None:
        proc = MockProcess()
        invoker = _make_invoker()
        proc.emit({"type": "system", "subtype": "init"})

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            async with aclosing(invoker.invoke(_REQUEST)) as records:
                async for _ in records:
                    break

            proc.emit(_RESULT)
            proc.exit(0)
            for _ in range(50):
                if not invoker._background:
                    break
                await asyncio.sleep(0.01)

        proc.terminate.assert_not_called()
        proc.kill.assert_not_called()
        assert not invoker._background


# ------------------------------------------------------------------ #
# Deadlines
# ------------------------------------------------------------------ #


class TestDeadlines:
    async def test_idle_timeout_without_children_terminates(self) -> None:
        proc = MockProcess()
        invoker = _make_invoker(
            idle_timeout=0.1, liveness_interval=0.02, probe=lambda pid: False
        )

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationTimeout) as exc_info,
        ):
            await asyncio.wait_for(_run(invoker, _REQUEST), timeout=5.0)

        assert exc_info.value.reason == "idle"
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()

    async def test_idle_timer_reset_while_children_alive(self) -> None:
        proc = MockProcess()
        probe = MagicMock(return_value=True)
        invoker = _make_invoker(idle_timeout=0.15, liveness_interval=0.02, probe=probe)

        loop = asyncio.get_running_loop()
        loop.call_later(0.5, proc.emit, _RESULT)
        loop.call_later(0.55, proc.exit, 0)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            records = await asyncio.wait_for(_run(invoker, _REQUEST), timeout=5.0)

        assert [r.type for r in records] == ["result"]
        proc.terminate.assert_not_called()
        probe.assert_called_with(proc.pid)

    async def test_output_resets_idle_timer(self) -> None:
        proc = MockProcess()
        invoker = _make_invoker(idle_timeout=0.3, probe=None)

        loop = asyncio.get_running_loop()
        for i in range(1, 6):
            loop.call_later(0.1 * i, proc.emit, {"type": "system", "n": i})
        loop.call_later(0.55, proc.exit, 0)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            records = await asyncio.wait_for(_run(invoker, _REQUEST), timeout=5.0)

        assert len(records) == 5
        proc.terminate.assert_not_called()

    async def test_hard_deadline_ignores_activity(self) -> None:
        proc = MockProcess()
        invoker = _make_invoker(
            idle_timeout=5.0,
            hard_timeout=0.15,
            liveness_interval=0.02,
            probe=lambda pid: True,
        )

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationTimeout) as exc_info,
        ):
            await asyncio.wait_for(_run(invoker, _REQUEST), timeout=5.0)

        assert exc_info.value.reason == "hard"
        proc.terminate.assert_called_once()

    async def test_sigkill_after_grace(self, killpg: MagicMock) -> None:
        proc = MockProcess(ignore_sigterm=True)
        invoker = _make_invoker(idle_timeout=0.05, kill_grace=0.05)

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationTimeout),
        ):
            await asyncio.wait_for(_run(invoker, _REQUEST), timeout=5.0)

        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()
        assert proc.returncode == -9
        assert killpg.call_args_list == [
            call(proc.pid, signal.SIGTERM),
            call(proc.pid, signal.SIGKILL),
        ]

    async def test_deadline_signals_whole_process_group(
        self, killpg: MagicMock
    ) -> None:
        proc = MockProcess()
        invoker = _make_invoker(idle_timeout=0.05)

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationTimeout),
        ):
            await asyncio.wait_for(_run(invoker, _REQUEST), timeout=5.0)

        killpg.assert_called_once_with(proc.pid, signal.SIGTERM)

    async def test_descendant_holding_stdout_does_not_block_timeout(
        self, killpg: MagicMock
    ) -> None:
        """A grandchild keeping the pipe open cannot stall the deadline."""
        proc = MockProcess(ignore_sigterm=True, stdout_held=True)
        proc.emit({"type": "system", "subtype": "init"})
        invoker = _make_invoker(idle_timeout=0.1, kill_grace=0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationTimeout) as exc_info,
        ):
            await asyncio.wait_for(_run(invoker, _REQUEST), timeout=5.0)

        assert exc_info.value.reason == "idle"
        assert exc_info.value.returncode == -9
        assert loop.time() - started < 1.5
        assert killpg.call_args_list == [
            call(proc.pid, signal.SIGTERM),
            call(proc.pid, signal.SIGKILL),
        ]

    async def test_exited_child_with_open_pipe_is_cleaned_up(
        self, killpg: MagicMock
    ) -> None:
        proc = MockProcess(stdout_held=True)
        proc.emit(_RESULT)
        proc.exit(0)
        invoker = _make_invoker(idle_timeout=0.1, kill_grace=0.05)
        records: list[RawRecord] = []

        async def consume() -> None:
            async for record in invoker.invoke(_REQUEST):
                records.append(record)

        with (
            patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)),
            pytest.raises(InvocationTimeout) as exc_info,
        ):
            await asyncio.wait_for(consume(), timeout=5.0)

        assert [r.type for r in records] == ["result"]
        assert exc_info.value.returncode == 0
        killpg.assert_called_once_with(proc.pid, signal.SIGKILL)
        proc.terminate.assert_not_called()
        proc.kill.assert_not_called()
