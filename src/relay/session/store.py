"""Session store — TTL-bounded map from external conversation ids to CLI sessions.

The store is the single owner of its map.  Every read hands out a copy
and every mutation goes through :meth:`SessionStore.lookup`,
:meth:`~SessionStore.upsert`, :meth:`~SessionStore.remove`, or the
maintenance loops, all serialized by one ``threading.Lock``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from relay.background_loop import BackgroundLoop
from relay.config.models import SessionsConfig
from relay.session.models import (
    SessionRecord,
    SessionStats,
    SessionSummary,
    format_duration,
)
from relay.session.persistence import (
    JsonFilePersistence,
    NullPersistence,
    SessionPersistence,
)

logger = logging.getLogger(__name__)

#: Default idle lifetime of a session mapping (24 hours).
DEFAULT_TTL_SECONDS = 24 * 60 * 60

#: Default interval between expiry sweeps (1 hour).
DEFAULT_SWEEP_INTERVAL = 60 * 60

#: Default interval between saves (5 minutes).
DEFAULT_SAVE_INTERVAL = 5 * 60


class SessionStore:
    """In-memory session map with lazy expiry and pluggable persistence."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        persistence: SessionPersistence | None = None,
        clock: Callable[[], float] = time.time,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        save_interval: float = DEFAULT_SAVE_INTERVAL,
    ) -> None:
        self._ttl = ttl_seconds
        self._persistence: SessionPersistence = persistence or NullPersistence()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._save_interval = save_interval
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionRecord] = {}
        self._loops: list[BackgroundLoop] = []

    @classmethod
    def from_config(cls, config: SessionsConfig) -> SessionStore:
        """Build a store persisted to ``config.file`` and load it."""
        store = cls(
            ttl_seconds=config.ttl_hours * 60 * 60,
            persistence=JsonFilePersistence(Path(config.file)),
            sweep_interval=config.sweep_interval,
            save_interval=config.save_interval,
        )
        store.load()
        return store

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def lookup(self, external_id: str) -> SessionRecord | None:
        """Return a copy of the live record, or ``None``.

        An expired record is deleted on the spot.
        """
        with self._lock:
            record = self._sessions.get(external_id)
            if record is None:
                return None
            if self._expired(record, self._clock()):
                del self._sessions[external_id]
                logger.info("Session expired: %s", external_id)
                return None
            return record.model_copy()

    def upsert(self, external_id: str, internal_id: str) -> SessionRecord:
        """Create or refresh the record for *external_id*; returns a copy."""
        now = self._clock()
        with self._lock:
            record = self._sessions.get(external_id)
            if record is not None and not self._expired(record, now):
                record.internal_id = internal_id
                record.last_activity = now
                record.message_count += 1
                logger.info(
                    "Session updated: %s -> %s (%d msgs)",
                    external_id,
                    internal_id,
                    record.message_count,
                )
            else:
                record = SessionRecord(
                    internal_id=internal_id,
                    external_id=external_id,
                    created_at=now,
                    last_activity=now,
                    message_count=1,
                )
                self._sessions[external_id] = record
                logger.info("Session created: %s -> %s", external_id, internal_id)
            return record.model_copy()

    def remove(self, external_id: str) -> bool:
        """Drop the record for *external_id*.  Returns whether one existed."""
        with self._lock:
            existed = self._sessions.pop(external_id, None) is not None
        if existed:
            logger.info("Session removed: %s", external_id)
        return existed

    def snapshot(self) -> SessionStats:
        """Read-only stats over the live (unexpired) records."""
        now = self._clock()
        with self._lock:
            live = [r for r in self._sessions.values() if not self._expired(r, now)]
            rows = [
                SessionSummary(
                    id=r.external_id,
                    internal_id=r.internal_id,
                    messages=r.message_count,
                    age=format_duration(now - r.created_at),
                    idle=format_duration(now - r.last_activity),
                )
                for r in live
            ]
        return SessionStats(total=len(rows), sessions=rows)

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def sweep(self) -> int:
        """Remove every expired record; saves when anything was removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, r in self._sessions.items() if self._expired(r, now)]
            for key in expired:
                del self._sessions[key]
        if expired:
            logger.info("Cleaned up %d expired session(s)", len(expired))
            self.save()
        return len(expired)

    def save(self) -> None:
        """Hand a full copy of the map to the persistence strategy."""
        with self._lock:
            records = {k: r.model_copy() for k, r in self._sessions.items()}
        self._persistence.save(records)
        logger.debug("Saved %d session(s)", len(records))

    def load(self) -> int:
        """Replace the map with persisted records that are still within TTL."""
        loaded = self._persistence.load()
        now = self._clock()
        live = {k: r for k, r in loaded.items() if not self._expired(r, now)}
        with self._lock:
            self._sessions = live
        if live:
            logger.info("Loaded %d session(s)", len(live))
        discarded = len(loaded) - len(live)
        if discarded:
            logger.info("Discarded %d expired session(s) on load", discarded)
        return len(live)

    async def start(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Start the background sweep and save loops."""
        if self._loops:
            return
        event = shutdown_event or asyncio.Event()
        self._loops = [
            BackgroundLoop("session-sweep", self.sweep, self._sweep_interval, event),
            BackgroundLoop("session-save", self.save, self._save_interval, event),
        ]
        for loop in self._loops:
            loop.start()

    async def stop(self) -> None:
        """Stop the background loops and save one last time."""
        for loop in self._loops:
            await loop.stop()
        self._loops = []
        self.save()

    def _expired(self, record: SessionRecord, now: float) -> bool:
        return now - record.last_activity > self._ttl

