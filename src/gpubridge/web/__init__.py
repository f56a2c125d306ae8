"""HTTP and WebSocket publication of the shared GPU state."""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, WebSocket
from fastapi.responses import HTMLResponse

from gpubridge import __version__
from gpubridge.backends import get_backend
from gpubridge.config import BridgeConfig
from gpubridge.store import SnapshotStore, now_ms
from gpubridge.web.feed import LiveFeed
from gpubridge.web.page import render_page
from gpubridge.widget import build_widget

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gpubridge.backends.base import StatsBackend

logger = logging.getLogger(__name__)

__all__ = ["create_app"]


def _install_restart_signal(loop: asyncio.AbstractEventLoop, backend: StatsBackend) -> bool:
    """SIGHUP restarts the statistics utility (Unix, main thread only)."""
    if not hasattr(signal, "SIGHUP"):
        return False
    try:
        loop.add_signal_handler(signal.SIGHUP, backend.request_restart)
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("SIGHUP handler not installed", exc_info=True)
        return False
    return True


def create_app(
    config: BridgeConfig | None = None,
    backend: StatsBackend | None = None,
) -> FastAPI:
    """Build the FastAPI app around *backend* (created from *config* if omitted)."""
    if config is None:
        config = BridgeConfig()
    if backend is None:
        backend = get_backend(config, SnapshotStore())
    feed = LiveFeed(backend.store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()
        feed.attach(loop)
        await backend.start()
        sighup = _install_restart_signal(loop, backend)
        try:
            yield
        finally:
            if sighup:
                loop.remove_signal_handler(signal.SIGHUP)
            logger.info("Shutting down %s backend", backend.mode)
            await backend.stop()
            feed.detach()

    app = FastAPI(title="gpubridge", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.backend = backend
    app.state.feed = feed

    @app.get("/")
    async def index() -> HTMLResponse:
        return HTMLResponse(render_page())

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket) -> None:
        await feed.serve(ws)

    @app.get("/api/gpu")
    async def api_gpu() -> dict[str, Any]:
        entry = await backend.snapshot()
        return entry.to_dict()

    @app.get("/api/processes")
    async def api_processes() -> dict[str, Any]:
        processes = await backend.refresh_processes()
        if processes is None:
            return {"available": False, "processes": []}
        return {
            "available": True,
            "processes": [p.to_dict() for p in processes],
            "count": len(processes),
        }

    @app.get("/widgets/gpu")
    async def widget() -> dict[str, Any]:
        entry = await backend.snapshot()
        return build_widget(entry)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": "ok",
            "gpuAvailable": backend.store.available,
            "timestamp": now_ms(),
            "mode": backend.mode,
            "restarts": backend.restart_count,
        }
        if backend.mode == "relay":
            body["upstream"] = config.relay.upstream_url
        return body

    return app
