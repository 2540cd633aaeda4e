from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class WorkerSnapshot:
    worker_id: str
    last_seen: datetime


class WorkerActivityStore:
    """Last time each worker passed authentication."""

    def __init__(self) -> None:
        self._last_seen: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def mark_active(self, worker_id: str, at: datetime | None = None) -> None:
        at = at or datetime.now(timezone.utc)
        with self._lock:
            self._last_seen[worker_id] = at

    def snapshots_sorted_by_recent(self) -> list[WorkerSnapshot]:
        with self._lock:
            items = list(self._last_seen.items())
        items.sort(key=lambda kv: kv[1], reverse=True)
        return [WorkerSnapshot(worker_id=w, last_seen=t) for w, t in items]
