"""Bounded in-memory history of received webhook events.

The buffer is most-recent-first and capped at ``max_size`` entries. It is
the replay source for new stream subscribers and backs
``GET /api/events/history``. Nothing here survives a restart.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Any

DEFAULT_MAX_HISTORY = 50


@dataclass
class EventRecord:
    """Normalized representation of one inbound webhook event."""

    action: str | None
    resource_type: str | None
    resource_gid: str | None
    resource_name: str | None
    created_at: str | None  # sender-supplied, not validated
    received_at: str  # assigned on arrival, ordering key
    user: Any = None
    parent: Any = None
    full_event: dict[str, Any] = field(default_factory=dict)
    signature_verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HistoryBuffer:
    """Most-recent-first list of EventRecords, truncated on append."""

    def __init__(self, max_size: int = DEFAULT_MAX_HISTORY) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._max_size = max_size
        self._records: list[EventRecord] = []
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: EventRecord) -> None:
        """Prepend a record, dropping the oldest entries beyond capacity."""
        with self._lock:
            self._records.insert(0, record)
            del self._records[self._max_size:]

    def snapshot(self) -> list[EventRecord]:
        """Return a point-in-time copy, newest first."""
        with self._lock:
            return list(self._records)

    def snapshot_dicts(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.snapshot()]

    def clear(self) -> int:
        """Empty the buffer. Returns how many records were removed."""
        with self._lock:
            count = len(self._records)
            self._records.clear()
        return count
