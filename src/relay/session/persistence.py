"""Persistence strategies for the session store.

The store holds its map in memory and hands a full copy to a strategy
on every save; a strategy never sees the live map.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from relay.session.models import SessionRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionPersistence(Protocol):
    """Durable storage for the external-to-internal session map."""

    def load(self) -> dict[str, SessionRecord]: ...

    def save(self, records: Mapping[str, SessionRecord]) -> None: ...


class NullPersistence:
    """Keeps nothing.  Sessions last for the lifetime of the process."""

    def load(self) -> dict[str, SessionRecord]:
        return {}

    def save(self, records: Mapping[str, SessionRecord]) -> None:
        return None


class MemoryPersistence:
    """Keeps the last saved map in memory (restart simulation in tests)."""

    def __init__(self, records: Mapping[str, SessionRecord] | None = None) -> None:
        self.records: dict[str, SessionRecord] = dict(records or {})
        self.save_count = 0

    def load(self) -> dict[str, SessionRecord]:
        return {k: v.model_copy() for k, v in self.records.items()}

    def save(self, records: Mapping[str, SessionRecord]) -> None:
        self.records = {k: v.model_copy() for k, v in records.items()}
        self.save_count += 1


class JsonFilePersistence:
    """Single JSON file, overwritten wholesale on every save."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, SessionRecord]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Session load failed (%s): %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Session file %s does not hold a JSON object", self.path)
            return {}

        records: dict[str, SessionRecord] = {}
        for key, raw in data.items():
            try:
                records[key] = SessionRecord.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed session %r: %s", key, exc)
        return records

    def save(self, records: Mapping[str, SessionRecord]) -> None:
        payload = {k: v.model_dump() for k, v in records.items()}
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("Session save failed (%s): %s", self.path, exc)
