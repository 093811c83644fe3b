"""
In-memory processing history.
"""
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

DEFAULT_LIMIT = 50


def _now_iso():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass(frozen=True)
class HistoryEntry:
    """One completed (or mock-completed) run."""
    original_file: str
    processed_file: str
    options: Dict[str, Any]
    type: str                       # 'image' or 'video'
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    processed_at: str = field(default_factory=_now_iso)

    def to_dict(self):
        return {
            "id": self.id,
            "originalFile": self.original_file,
            "processedFile": self.processed_file,
            "processedAt": self.processed_at,
            "options": dict(self.options),
            "type": self.type,
        }


class HistoryStore:
    """
    Bounded, most-recent-first log of history entries.

    Prepend and eviction happen under one lock so concurrent runs
    finishing together cannot interleave.
    """

    def __init__(self, limit: int = DEFAULT_LIMIT):
        if limit < 1:
            raise ValueError("history limit must be at least 1")
        self.limit = limit
        self._entries = deque(maxlen=limit)
        self._lock = threading.Lock()

    def record(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            # appendleft on a full deque drops the oldest entry from the right
            self._entries.appendleft(entry)
        return entry

    def list(self) -> Tuple[HistoryEntry, ...]:
        """Snapshot of the current entries, most recent first."""
        with self._lock:
            return tuple(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)
