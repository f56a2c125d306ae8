"""Relay backend: no local utility, forward pulls to an upstream instance.

Security/robustness rules for upstream requests:
1. No redirect following
2. Fixed timeout (default 5s) over the whole request, 1MB response size limit
3. Any failure degrades to an unavailable snapshot, never an exception
"""

from __future__ import annotations

import asyncio
import http.client
import json
import logging
import urllib.error
import urllib.request
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from gpubridge.backends.base import (
    GpuProcessEntry,
    RelayError,
    SnapshotEntry,
    StatsBackend,
)

if TYPE_CHECKING:
    from gpubridge.config import RelayConfig
    from gpubridge.store import SnapshotStore

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 5.0
_MAX_RESPONSE_BYTES = 1024 * 1024


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    """HTTP handler that rejects all redirects."""

    def redirect_request(
        self,
        req: urllib.request.Request,
        fp: Any,
        code: int,
        msg: str,
        headers: Any,
        newurl: str,
    ) -> None:
        raise RelayError(f"Redirect rejected: {code} -> {newurl}")


class UpstreamClient:
    """Blocking JSON GETs against another gpubridge instance."""

    def __init__(self, base_url: str, timeout: float = _DEFAULT_TIMEOUT_S) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_json(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        opener = urllib.request.build_opener(_NoRedirectHandler)
        try:
            req = urllib.request.Request(url, method="GET", headers={"Accept": "application/json"})
            with opener.open(req, timeout=self.timeout) as resp:
                data = resp.read(_MAX_RESPONSE_BYTES + 1)
        except RelayError:
            raise
        except urllib.error.HTTPError as exc:
            raise RelayError(f"HTTP error {exc.code} from {url}") from exc
        except urllib.error.URLError as exc:
            raise RelayError(f"Connection failed to {url}: {exc.reason}") from exc
        except TimeoutError as exc:
            raise RelayError(f"Timeout connecting to {url}") from exc
        except http.client.HTTPException as exc:
            raise RelayError(f"Bad response from {url}: {exc!r}") from exc
        except OSError as exc:
            raise RelayError(f"Connection failed to {url}: {exc}") from exc

        if len(data) > _MAX_RESPONSE_BYTES:
            raise RelayError(f"Response exceeds {_MAX_RESPONSE_BYTES} byte limit")
        try:
            return json.loads(data)
        except ValueError as exc:
            raise RelayError(f"Invalid JSON from {url}: {exc}") from exc


def entry_from_payload(payload: Any) -> SnapshotEntry:
    """Rebuild a SnapshotEntry from an upstream ``/api/gpu`` body."""
    if not isinstance(payload, dict):
        raise RelayError("Upstream /api/gpu body is not an object")
    data = payload.get("data")
    timestamp = payload.get("timestamp")
    return SnapshotEntry(
        timestamp=timestamp if isinstance(timestamp, int) else None,
        data=data if isinstance(data, dict) else None,
        available=bool(payload.get("available")) and isinstance(data, dict),
    )


def processes_from_payload(payload: Any) -> list[GpuProcessEntry]:
    """Rebuild the process list from an upstream ``/api/processes`` body."""
    if not isinstance(payload, dict):
        raise RelayError("Upstream /api/processes body is not an object")
    result: list[GpuProcessEntry] = []
    for item in payload.get("processes") or []:
        try:
            media = item.get("media")
            result.append(GpuProcessEntry(
                name=str(item["name"]),
                pid=int(item["pid"]),
                command=str(item.get("command") or item["name"]),
                media=str(media) if media is not None else None,
            ))
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.debug("Skipping malformed upstream process entry: %r", item)
    return result


class RelayBackend(StatsBackend):
    """Relay mode: every pull is answered from the upstream instance."""

    mode = "relay"

    def __init__(self, store: SnapshotStore, client: UpstreamClient) -> None:
        super().__init__(store)
        self.client = client

    @classmethod
    def from_config(cls, config: RelayConfig, store: SnapshotStore) -> RelayBackend:
        return cls(store, UpstreamClient(config.upstream_url, config.timeout_seconds))

    async def _fetch(self, path: str) -> Any:
        """GET *path* upstream; the timeout bounds the whole request, not each read."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.client.get_json, path), self.client.timeout
            )
        except asyncio.TimeoutError as exc:
            raise RelayError(
                f"No complete response for {path} within {self.client.timeout}s"
            ) from exc

    async def start(self) -> None:
        logger.info("Relaying GPU data from %s", self.client.base_url)

    async def stop(self) -> None:
        self.store.replace(SnapshotEntry.empty())

    async def snapshot(self) -> SnapshotEntry:
        try:
            payload = await self._fetch("/api/gpu")
            entry = entry_from_payload(payload)
        except RelayError as exc:
            logger.warning("Upstream fetch failed: %s", exc)
            entry = SnapshotEntry(
                timestamp=self.store.current.timestamp,
                data=self.store.current.data,
                available=False,
            )
            self.store.replace(entry)
            return entry

        if entry.available and entry.data is not None:
            return self.store.publish(entry.data, timestamp=entry.timestamp)
        self.store.replace(entry)
        return entry

    async def refresh_processes(self) -> Sequence[GpuProcessEntry] | None:
        try:
            payload = await self._fetch("/api/processes")
            if isinstance(payload, dict) and not payload.get("available", True):
                self.store.replace_processes(())
                return None
            processes = processes_from_payload(payload)
        except RelayError as exc:
            logger.warning("Upstream process fetch failed: %s", exc)
            self.store.replace_processes(())
            return None
        self.store.replace_processes(processes)
        return tuple(processes)
