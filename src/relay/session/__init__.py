"""Session continuity — records, persistence, and the TTL store."""

from relay.session.models import (
    SessionRecord,
    SessionStats,
    SessionSummary,
    format_duration,
)
from relay.session.persistence import (
    JsonFilePersistence,
    MemoryPersistence,
    NullPersistence,
    SessionPersistence,
)
from relay.session.store import SessionStore

__all__ = [
    "JsonFilePersistence",
    "MemoryPersistence",
    "NullPersistence",
    "SessionPersistence",
    "SessionRecord",
    "SessionStats",
    "SessionStore",
    "SessionSummary",
    "format_duration",
]
