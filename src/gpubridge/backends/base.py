"""Core data types, backend ABC, and exception hierarchy."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from gpubridge.store import SnapshotStore

# --- Exceptions ---


class GpuBridgeError(Exception):
    """Base exception for all gpubridge errors."""


class BackendError(GpuBridgeError):
    """Statistics backend failed to start or communicate."""


class RelayError(BackendError):
    """Upstream instance could not be reached or returned garbage."""


class ConfigError(GpuBridgeError):
    """Configuration loading or validation failure."""


# --- Data Types (frozen, slotted) ---


@dataclass(frozen=True, slots=True)
class GpuProcessEntry:
    """A process observed holding a GPU device at scan time."""

    name: str
    pid: int
    command: str
    media: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class SnapshotEntry:
    """The current statistics snapshot plus capture time and availability."""

    timestamp: int | None  # ms since the epoch
    data: Mapping[str, Any] | None
    available: bool

    @classmethod
    def empty(cls) -> SnapshotEntry:
        return cls(timestamp=None, data=None, available=False)

    def to_dict(self) -> dict[str, Any]:
        """Pull-endpoint shape: ``{available, timestamp, data}``."""
        return {
            "available": self.available,
            "timestamp": self.timestamp,
            "data": self.data,
        }


# --- Backend ABC ---


class StatsBackend(ABC):
    """Source of snapshots and GPU process lists for the publication layer."""

    mode: str = ""

    def __init__(self, store: SnapshotStore) -> None:
        self.store = store

    @abstractmethod
    async def start(self) -> None:
        """Begin producing data (spawn the utility, start loops)."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop producing data and release every resource."""

    @abstractmethod
    async def snapshot(self) -> SnapshotEntry:
        """Return the entry that should be served to a pull request."""

    @abstractmethod
    async def refresh_processes(self) -> Sequence[GpuProcessEntry] | None:
        """Scan for GPU holders now and return the fresh list.

        Returns None when no GPU data is available at all.
        """

    def request_restart(self) -> None:
        """Ask the backend to restart its data source, if it has one."""

    @property
    def restart_count(self) -> int:
        return 0

    async def __aenter__(self) -> StatsBackend:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()
