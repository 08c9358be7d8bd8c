"""Periodic background work for long-lived relay components.

The session store runs two of these: one sweeps expired records and one
saves the map.  A loop sleeps in slices of at most a second so a shared
shutdown event is noticed promptly, and a failing run is logged without
ending the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

#: Longest single sleep between shutdown checks.
_SLICE_SECONDS = 1.0


class BackgroundLoop:
    """Calls ``action`` every ``interval`` seconds until stopped or shut down."""

    def __init__(
        self,
        name: str,
        action: Callable[[], object],
        interval: float,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self._action = action
        self._interval = interval
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop.  No-op if running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.debug("%s: started (every %gs)", self.name, self._interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("%s: stopped after %d run(s)", self.name, self.runs)

    async def _wait_interval(self) -> bool:
        """Sleep one interval; ``True`` means shutdown was requested."""
        remaining = self._interval
        while remaining > 0:
            if self._shutdown_event.is_set():
                return True
            step = min(_SLICE_SECONDS, remaining)
            await asyncio.sleep(step)
            remaining -= step
        return self._shutdown_event.is_set()

    async def _run(self) -> None:
        while not await self._wait_interval():
            try:
                self._action()
            except Exception:
                logger.exception("%s: periodic run failed", self.name)
            else:
                self.runs += 1
