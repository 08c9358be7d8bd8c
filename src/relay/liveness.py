"""Liveness probe — does a process currently have child processes?

A CLI turn that is running a long tool (a build, a test suite, ...) is
quiet on stdout but very much alive; its tool shows up as a child of the
CLI process.  On Linux the answer comes straight from ``/proc`` (no
subprocess); elsewhere we fall back to ``pgrep -P``.
"""

from __future__ import annotations

import logging
import platform
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

#: Seconds before a ``pgrep`` probe is abandoned.
_PGREP_TIMEOUT = 3.0

_PROC_ROOT = Path("/proc")


def _children_linux(pid: int, proc_root: Path = _PROC_ROOT) -> list[int] | None:
    """Read child PIDs from ``/proc/<pid>/task/*/children``.

    Returns ``None`` when the kernel does not expose the file.
    """
    task_dir = proc_root / str(pid) / "task"
    try:
        tasks = list(task_dir.iterdir())
    except OSError:
        return None

    children: list[int] = []
    found_any = False
    for task in tasks:
        try:
            text = (task / "children").read_text()
        except OSError:
            continue
        found_any = True
        children.extend(int(tok) for tok in text.split() if tok.isdigit())
    return children if found_any else None


def _children_pgrep(pid: int) -> list[int]:
    """List child PIDs with ``pgrep -P`` (exit code 0 = children found)."""
    try:
        result = subprocess.run(
            ["pgrep", "-P", str(pid)],
            capture_output=True,
            text=True,
            timeout=_PGREP_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("pgrep probe for %d failed: %s", pid, exc)
        return []
    if result.returncode != 0:
        return []
    return [int(tok) for tok in result.stdout.split() if tok.isdigit()]


def has_active_children(pid: int) -> bool:
    """Return ``True`` if *pid* has at least one live child process."""
    if platform.system() == "Linux":
        children = _children_linux(pid)
        if children is not None:
            return bool(children)
    return bool(_children_pgrep(pid))
