"""Priority queue deciding which scheduled worker runs next."""
from __future__ import annotations

import bisect
import time
from typing import Iterator, List, Optional

from fleetmaster.core.models import QueueEntry


class ExecutionQueue:
    """Entries ordered by (priority, dependency depth); FIFO within equal keys."""

    def __init__(self) -> None:
        self._entries: List[QueueEntry] = []

    def push(self, name: str, priority: int, dependency_depth: int) -> QueueEntry:
        entry = QueueEntry(
            name=name,
            priority=priority,
            dependency_depth=dependency_depth,
            queued_at=time.monotonic(),
        )
        # insort_right keeps arrival order inside a (priority, depth) bucket.
        bisect.insort_right(self._entries, entry, key=lambda e: e.sort_key)
        return entry

    def pop(self) -> Optional[QueueEntry]:
        if not self._entries:
            return None
        return self._entries.pop(0)

    def clear(self) -> None:
        self._entries.clear()

    def names(self) -> List[str]:
        return [entry.name for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(list(self._entries))
