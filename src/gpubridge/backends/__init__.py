"""Statistics backend abstraction and factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gpubridge.backends.base import (
    BackendError,
    ConfigError,
    GpuBridgeError,
    GpuProcessEntry,
    RelayError,
    SnapshotEntry,
    StatsBackend,
)

if TYPE_CHECKING:
    from gpubridge.config import BridgeConfig
    from gpubridge.store import SnapshotStore

__all__ = [
    "BackendError",
    "ConfigError",
    "GpuBridgeError",
    "GpuProcessEntry",
    "RelayError",
    "SnapshotEntry",
    "StatsBackend",
    "get_backend",
]


def get_backend(config: BridgeConfig, store: SnapshotStore) -> StatsBackend:
    """Create the backend for ``config.monitor.mode``.

    ``embedded`` runs ``intel_gpu_top`` locally; ``relay`` forwards to the
    instance at ``config.relay.upstream_url``.
    """
    if config.monitor.mode == "relay":
        from gpubridge.backends.relay import RelayBackend

        return RelayBackend.from_config(config.relay, store)

    from gpubridge.backends.intel import IntelGpuTopBackend

    return IntelGpuTopBackend.from_config(config.monitor, config.processes, store)
