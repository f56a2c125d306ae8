"""Pydantic-validated config loaded from TOML with environment overrides.

TOML loading uses ``tomllib`` (3.11+) with ``tomli`` fallback.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

from gpubridge.backends.base import ConfigError

if sys.version_info >= (3, 11):
    import tomllib  # type: ignore[import-not-found]
else:
    try:
        import tomllib  # type: ignore[import-not-found]
    except ModuleNotFoundError:
        import tomli as tomllib

logger = logging.getLogger(__name__)

_CONFIG_DIR = Path("~/.config/gpubridge").expanduser()
_DEFAULT_CONFIG_PATH = _CONFIG_DIR / "config.toml"

ENV_PORT = "GPUBRIDGE_PORT"
ENV_MODE = "GPUBRIDGE_MODE"
ENV_UPSTREAM_URL = "GPUBRIDGE_UPSTREAM_URL"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = 8847
    log_level: Literal["debug", "info", "warning", "error"] = "info"

    @field_validator("port")
    @classmethod
    def _check_port(cls, v: int) -> int:
        if v < 1 or v > 65535:
            msg = "port must be between 1 and 65535"
            raise ValueError(msg)
        return v


class MonitorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["embedded", "relay"] = "embedded"
    binary: str = "intel_gpu_top"
    sample_interval_ms: int = 1000
    device_dir: str = "/dev/dri"
    restart_delay_seconds: float = 5.0
    buffer_limit_bytes: int = 100_000
    string_aware_framing: bool = False

    @field_validator("sample_interval_ms")
    @classmethod
    def _check_interval(cls, v: int) -> int:
        if v < 100:
            msg = "sample_interval_ms must be at least 100"
            raise ValueError(msg)
        return v

    @field_validator("restart_delay_seconds")
    @classmethod
    def _check_restart_delay(cls, v: float) -> float:
        if v <= 0:
            msg = "restart_delay_seconds must be positive"
            raise ValueError(msg)
        return v

    def command(self) -> list[str]:
        """Full argv for the statistics utility (JSON output, fixed interval)."""
        return [self.binary, "-J", "-s", str(self.sample_interval_ms)]


class ProcessesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scan_interval_seconds: float = 2.0
    clients_path: str = "/sys/kernel/debug/dri/0/clients"
    device_globs: list[str] = ["/dev/dri/render*", "/dev/dri/card*"]
    proc_root: str = "/proc"

    @field_validator("scan_interval_seconds")
    @classmethod
    def _check_scan_interval(cls, v: float) -> float:
        if v <= 0:
            msg = "scan_interval_seconds must be positive"
            raise ValueError(msg)
        return v


class RelayConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    upstream_url: str = "http://localhost:8847"
    timeout_seconds: float = 5.0

    @field_validator("upstream_url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            msg = "upstream_url must be an http:// or https:// URL"
            raise ValueError(msg)
        return v.rstrip("/")


class BridgeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server: ServerConfig = ServerConfig()
    monitor: MonitorConfig = MonitorConfig()
    processes: ProcessesConfig = ProcessesConfig()
    relay: RelayConfig = RelayConfig()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """Load config from *path*, default locations, or built-in defaults.

    Resolution order:
    1. Explicit *path* (error if missing or invalid).
    2. ``~/.config/gpubridge/config.toml`` (skip silently if absent).
    3. Built-in defaults.

    Environment overrides (``GPUBRIDGE_PORT``, ``GPUBRIDGE_MODE``,
    ``GPUBRIDGE_UPSTREAM_URL``) are applied on top.

    Raises :class:`ConfigError` on parse/validation failure.
    """
    if path is not None:
        data = _read_toml(path)
    elif _DEFAULT_CONFIG_PATH.is_file():
        data = _read_toml(_DEFAULT_CONFIG_PATH)
    else:
        data = {}

    _apply_env(data, os.environ if environ is None else environ)

    try:
        return BridgeConfig(**data)
    except Exception as exc:
        raise ConfigError(f"Config validation error: {exc}") from exc


def _read_toml(path: Path) -> dict:
    """Parse a TOML file into a plain dict."""
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    try:
        return tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc


def _apply_env(data: dict, environ: Mapping[str, str]) -> None:
    if ENV_PORT in environ:
        try:
            port = int(environ[ENV_PORT])
        except ValueError as exc:
            raise ConfigError(f"{ENV_PORT} must be an integer") from exc
        data.setdefault("server", {})["port"] = port
    if ENV_MODE in environ:
        data.setdefault("monitor", {})["mode"] = environ[ENV_MODE]
    if ENV_UPSTREAM_URL in environ:
        data.setdefault("relay", {})["upstream_url"] = environ[ENV_UPSTREAM_URL]
