"""Tests for the relay backend and its upstream client."""

from __future__ import annotations

import asyncio
import contextlib
import json
import socket
import threading
import time
from collections.abc import Callable, Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest

from gpubridge.backends import get_backend
from gpubridge.backends.base import GpuProcessEntry, RelayError
from gpubridge.backends.relay import (
    RelayBackend,
    UpstreamClient,
    entry_from_payload,
    processes_from_payload,
)
from gpubridge.config import BridgeConfig, MonitorConfig, RelayConfig
from gpubridge.store import SnapshotStore
from tests.fixtures.intel_gpu_top import SAMPLE


class FakeClient:
    """Answers ``get_json`` from a path -> payload map; exceptions are raised."""

    base_url = "http://upstream.test:8847"
    timeout = 5.0

    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = responses
        self.requests: list[str] = []

    def get_json(self, path: str) -> Any:
        self.requests.append(path)
        value = self.responses[path]
        if isinstance(value, Exception):
            raise value
        return value


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


class TestPayloads:
    def test_available_entry(self) -> None:
        entry = entry_from_payload({"available": True, "timestamp": 1700000000000, "data": SAMPLE})
        assert entry.available
        assert entry.timestamp == 1700000000000
        assert entry.data == SAMPLE

    def test_available_without_data_is_unavailable(self) -> None:
        entry = entry_from_payload({"available": True, "timestamp": 5, "data": None})
        assert not entry.available

    def test_not_an_object(self) -> None:
        with pytest.raises(RelayError):
            entry_from_payload([1, 2, 3])

    def test_processes(self) -> None:
        payload = {
            "available": True,
            "processes": [
                {"name": "ffmpeg -i a.mp4", "pid": 10, "command": "ffmpeg", "media": "a.mp4"},
                {"name": "Xorg", "pid": "11"},
                {"pid": 12},
                "garbage",
            ],
        }
        assert processes_from_payload(payload) == [
            GpuProcessEntry(name="ffmpeg -i a.mp4", pid=10, command="ffmpeg", media="a.mp4"),
            GpuProcessEntry(name="Xorg", pid=11, command="Xorg", media=None),
        ]


# ---------------------------------------------------------------------------
# RelayBackend
# ---------------------------------------------------------------------------


class TestRelayBackend:
    def test_snapshot_forwards_upstream(self, store: SnapshotStore) -> None:
        published: list[object] = []
        store.subscribe(published.append)
        client = FakeClient({"/api/gpu": {"available": True, "timestamp": 42, "data": SAMPLE}})
        backend = RelayBackend(store, client)

        entry = asyncio.run(backend.snapshot())

        assert entry.available
        assert entry.timestamp == 42
        assert store.current == entry
        assert published == [entry]
        assert client.requests == ["/api/gpu"]

    def test_upstream_unavailable(self, store: SnapshotStore) -> None:
        client = FakeClient({"/api/gpu": {"available": False, "timestamp": None, "data": None}})
        entry = asyncio.run(RelayBackend(store, client).snapshot())
        assert not entry.available
        assert not store.available

    def test_failure_keeps_last_data(self, store: SnapshotStore) -> None:
        client = FakeClient({"/api/gpu": {"available": True, "timestamp": 42, "data": SAMPLE}})
        backend = RelayBackend(store, client)
        asyncio.run(backend.snapshot())

        client.responses["/api/gpu"] = RelayError("Connection refused")
        entry = asyncio.run(backend.snapshot())

        assert not entry.available
        assert entry.data == SAMPLE
        assert entry.timestamp == 42
        assert store.current == entry

    def test_processes(self, store: SnapshotStore) -> None:
        client = FakeClient({
            "/api/processes": {
                "available": True,
                "processes": [{"name": "Xorg", "pid": 1, "command": "Xorg", "media": None}],
                "count": 1,
            },
        })
        result = asyncio.run(RelayBackend(store, client).refresh_processes())
        expected = (GpuProcessEntry(name="Xorg", pid=1, command="Xorg"),)
        assert result == expected
        assert store.processes == expected

    def test_processes_unavailable_upstream(self, store: SnapshotStore) -> None:
        store.replace_processes([GpuProcessEntry(name="old", pid=1, command="old")])
        client = FakeClient({"/api/processes": {"available": False, "processes": []}})
        assert asyncio.run(RelayBackend(store, client).refresh_processes()) is None
        assert store.processes == ()

    def test_processes_unreachable(self, store: SnapshotStore) -> None:
        client = FakeClient({"/api/processes": RelayError("timeout")})
        assert asyncio.run(RelayBackend(store, client).refresh_processes()) is None

    def test_stop_withdraws_data(self, store: SnapshotStore) -> None:
        client = FakeClient({"/api/gpu": {"available": True, "timestamp": 42, "data": SAMPLE}})
        backend = RelayBackend(store, client)

        async def run() -> None:
            async with backend:
                await backend.snapshot()
                assert store.available

        asyncio.run(run())
        assert store.current.data is None
        assert not store.available

    def test_factory_selects_relay(self, store: SnapshotStore) -> None:
        config = BridgeConfig(
            monitor=MonitorConfig(mode="relay"),
            relay=RelayConfig(upstream_url="http://gpu-host:8847/", timeout_seconds=2.0),
        )
        backend = get_backend(config, store)
        assert isinstance(backend, RelayBackend)
        assert backend.mode == "relay"
        assert backend.client.base_url == "http://gpu-host:8847"
        assert backend.client.timeout == 2.0


# ---------------------------------------------------------------------------
# UpstreamClient against a local HTTP server
# ---------------------------------------------------------------------------


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        if self.path == "/api/gpu":
            body = json.dumps({"available": True, "timestamp": 1, "data": {"x": 1}}).encode()
        elif self.path == "/redirect":
            self.send_response(302)
            self.send_header("Location", "/api/gpu")
            self.end_headers()
            return
        elif self.path == "/huge":
            body = b'"' + b"a" * (1024 * 1024 + 10) + b'"'
        elif self.path == "/garbage":
            body = b"<html>not json</html>"
        else:
            self.send_response(404)
            self.end_headers()
            return
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture()
def upstream() -> Iterator[str]:
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


class TestUpstreamClient:
    def test_get_json(self, upstream: str) -> None:
        client = UpstreamClient(upstream + "/", timeout=2.0)
        assert client.base_url == upstream
        assert client.get_json("/api/gpu") == {"available": True, "timestamp": 1, "data": {"x": 1}}

    def test_redirect_rejected(self, upstream: str) -> None:
        with pytest.raises(RelayError, match="Redirect"):
            UpstreamClient(upstream, timeout=2.0).get_json("/redirect")

    def test_http_error(self, upstream: str) -> None:
        with pytest.raises(RelayError, match="404"):
            UpstreamClient(upstream, timeout=2.0).get_json("/missing")

    def test_size_limit(self, upstream: str) -> None:
        with pytest.raises(RelayError, match="limit"):
            UpstreamClient(upstream, timeout=2.0).get_json("/huge")

    def test_invalid_json(self, upstream: str) -> None:
        with pytest.raises(RelayError, match="Invalid JSON"):
            UpstreamClient(upstream, timeout=2.0).get_json("/garbage")

    def test_connection_refused(self) -> None:
        with pytest.raises(RelayError):
            UpstreamClient("http://127.0.0.1:1", timeout=1.0).get_json("/api/gpu")


# ---------------------------------------------------------------------------
# Misbehaving upstreams (raw sockets)
# ---------------------------------------------------------------------------

Responder = Callable[[socket.socket], None]


@pytest.fixture()
def raw_upstream() -> Iterator[Callable[[Responder], str]]:
    """Start a one-connection-at-a-time TCP server; return its base URL."""
    listeners: list[socket.socket] = []

    def start(respond: Responder) -> str:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        listeners.append(sock)

        def serve() -> None:
            while True:
                try:
                    conn, _ = sock.accept()
                except OSError:
                    return
                with conn, contextlib.suppress(OSError):
                    conn.recv(65536)
                    respond(conn)

        threading.Thread(target=serve, daemon=True).start()
        return f"http://127.0.0.1:{sock.getsockname()[1]}"

    yield start
    for sock in listeners:
        sock.close()


def _garbage(conn: socket.socket) -> None:
    conn.sendall(b"GARBAGE\r\n\r\n")


def _trickle(conn: socket.socket) -> None:
    body = b'{"a": 1}'
    conn.sendall(
        b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
        b"Content-Length: %d\r\n\r\n" % len(body)
    )
    for i in range(len(body)):
        conn.sendall(body[i : i + 1])
        time.sleep(0.3)


class TestMisbehavingUpstream:
    def test_bad_status_line_is_relay_error(self, raw_upstream) -> None:
        url = raw_upstream(_garbage)
        with pytest.raises(RelayError, match="Bad response"):
            UpstreamClient(url, timeout=1.0).get_json("/api/gpu")

    def test_bad_status_line_degrades(self, raw_upstream) -> None:
        backend = RelayBackend(SnapshotStore(), UpstreamClient(raw_upstream(_garbage), 1.0))

        async def run() -> None:
            entry = await backend.snapshot()
            assert not entry.available
            assert await backend.refresh_processes() is None

        asyncio.run(run())

    def test_whole_request_bounded_by_timeout(self, raw_upstream) -> None:
        # each read arrives within the socket timeout, the full body does not
        backend = RelayBackend(SnapshotStore(), UpstreamClient(raw_upstream(_trickle), 0.5))

        async def run() -> float:
            started = time.monotonic()
            entry = await backend.snapshot()
            assert not entry.available
            return time.monotonic() - started

        assert asyncio.run(run()) < 1.5
