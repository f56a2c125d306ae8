"""Live WebSocket feed: push every published snapshot to connected clients."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket, WebSocketDisconnect

if TYPE_CHECKING:
    from collections.abc import Callable

    from gpubridge.backends.base import SnapshotEntry
    from gpubridge.store import SnapshotStore

logger = logging.getLogger(__name__)


def envelope(kind: str, entry: SnapshotEntry, store: SnapshotStore) -> dict[str, Any]:
    """Push-message shape: type tag plus the snapshot and process list."""
    return {
        "type": kind,
        "available": entry.available,
        "timestamp": entry.timestamp,
        "data": entry.data,
        "processes": [p.to_dict() for p in store.processes],
    }


class LiveFeed:
    """Fan-out of snapshots to WebSocket subscribers.

    Subscribes to the store; each publish is scheduled onto the event loop
    the feed was attached to, so publishers on any thread are fine.
    """

    def __init__(self, store: SnapshotStore) -> None:
        self._store = store
        self._clients: set[WebSocket] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._unsubscribe = self._store.subscribe(self._on_snapshot)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._loop = None

    async def serve(self, ws: WebSocket) -> None:
        """Handle one subscriber until it disconnects."""
        await ws.accept()
        self._clients.add(ws)
        logger.info("Client connected (%d total)", len(self._clients))
        try:
            await ws.send_json(envelope("status", self._store.current, self._store))
            while True:
                # Clients don't send anything meaningful; this just waits for close.
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            self._clients.discard(ws)
            logger.info("Client disconnected (%d left)", len(self._clients))

    def _on_snapshot(self, entry: SnapshotEntry) -> None:
        if self._loop is None or not self._clients:
            return
        message = json.dumps(envelope("gpu_data", entry, self._store))
        for ws in list(self._clients):
            asyncio.run_coroutine_threadsafe(self._send(ws, message), self._loop)

    async def _send(self, ws: WebSocket, message: str) -> None:
        try:
            await ws.send_text(message)
        except Exception:
            logger.debug("Dropping dead WebSocket client", exc_info=True)
            self._clients.discard(ws)
            with contextlib.suppress(Exception):
                await ws.close()
