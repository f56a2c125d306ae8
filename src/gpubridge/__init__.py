"""gpubridge: republish intel_gpu_top statistics over HTTP and WebSocket."""

from __future__ import annotations

__version__ = "0.1.0"
