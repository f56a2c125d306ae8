"""Single-slot snapshot cell and GPU process list shared by all readers.

Writers swap immutable values under a lock; readers just take the current
reference, so a reader never sees a half-written snapshot.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from gpubridge.backends.base import GpuProcessEntry, SnapshotEntry

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SnapshotEntry], None]


def now_ms() -> int:
    return int(time.time() * 1000)


class SnapshotStore:
    """Last-write-wins holder for the current snapshot and process list."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entry = SnapshotEntry.empty()
        self._processes: tuple[GpuProcessEntry, ...] = ()
        self._listeners: list[SnapshotListener] = []

    @property
    def current(self) -> SnapshotEntry:
        return self._entry

    @property
    def processes(self) -> tuple[GpuProcessEntry, ...]:
        return self._processes

    @property
    def available(self) -> bool:
        return self._entry.available

    # --- writers ---

    def publish(
        self, data: Mapping[str, Any], timestamp: int | None = None
    ) -> SnapshotEntry:
        """Install a freshly decoded snapshot and notify listeners."""
        if timestamp is None:
            timestamp = self._clock()
        entry = SnapshotEntry(timestamp=timestamp, data=data, available=True)
        with self._lock:
            self._entry = entry
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                logger.debug("Snapshot listener failed", exc_info=True)
        return entry

    def mark_unavailable(self) -> None:
        """Flip availability off; the last snapshot body is kept."""
        with self._lock:
            if self._entry.available:
                old = self._entry
                self._entry = SnapshotEntry(
                    timestamp=old.timestamp, data=old.data, available=False
                )

    def replace(self, entry: SnapshotEntry) -> None:
        """Install an entry obtained elsewhere (relay mode)."""
        with self._lock:
            self._entry = entry

    def replace_processes(self, entries: Iterable[GpuProcessEntry]) -> None:
        snapshot = tuple(entries)
        with self._lock:
            self._processes = snapshot

    # --- listeners ---

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call *listener* on every published snapshot.  Returns an unsubscriber."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
