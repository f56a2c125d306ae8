"""Process attribution: which processes hold the GPU, and on what media."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from gpubridge.attribution.strategies import (
    DiscoveryStrategy,
    DriClientsStrategy,
    FuserStrategy,
    LsofStrategy,
)
from gpubridge.backends.base import GpuProcessEntry

if TYPE_CHECKING:
    from gpubridge.config import ProcessesConfig

logger = logging.getLogger(__name__)

__all__ = [
    "DiscoveryStrategy",
    "DriClientsStrategy",
    "FuserStrategy",
    "LsofStrategy",
    "ProcessAttributor",
]


class ProcessAttributor:
    """Try discovery strategies in order; the first available one wins.

    Results from different strategies are never merged.  If every strategy
    is unavailable the scan returns an empty list.
    """

    def __init__(self, strategies: Sequence[DiscoveryStrategy]) -> None:
        self._strategies = tuple(strategies)
        self.last_strategy: str | None = None

    @classmethod
    def from_config(cls, config: ProcessesConfig) -> ProcessAttributor:
        proc_root = Path(config.proc_root)
        return cls([
            DriClientsStrategy(Path(config.clients_path), proc_root),
            LsofStrategy(config.device_globs),
            FuserStrategy(config.device_globs, proc_root),
        ])

    @property
    def strategies(self) -> tuple[DiscoveryStrategy, ...]:
        return self._strategies

    async def scan(self) -> list[GpuProcessEntry]:
        for strategy in self._strategies:
            try:
                result = await strategy.discover()
            except Exception:
                logger.debug("Discovery strategy %s failed", strategy.name, exc_info=True)
                continue
            if result is not None:
                self.last_strategy = strategy.name
                return result
        self.last_strategy = None
        return []
