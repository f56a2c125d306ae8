"""CLI entry point for gpubridge."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from gpubridge import __version__

if TYPE_CHECKING:
    from gpubridge.config import BridgeConfig

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpubridge",
        description="Republish intel_gpu_top statistics over HTTP and WebSocket.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"gpubridge {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Serve subcommand (default behavior)
    serve = subparsers.add_parser("serve", help="Run the monitoring service (default)")
    _add_serve_args(serve)

    check = subparsers.add_parser(
        "check",
        help="Print GPU device status and one process scan as JSON",
    )
    check.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to config TOML file",
    )

    # Serve args on the top-level parser so the subcommand can be omitted
    _add_serve_args(parser)

    return parser


def _add_serve_args(parser: argparse.ArgumentParser) -> None:
    """Add service arguments to a parser."""
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to config TOML file",
    )
    parser.add_argument(
        "--mode",
        choices=("embedded", "relay"),
        default=None,
        help="embedded: run intel_gpu_top locally; relay: forward to --upstream",
    )
    parser.add_argument("--host", default=None, help="Address to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument(
        "--upstream",
        default=None,
        metavar="URL",
        help="Upstream gpubridge base URL (relay mode)",
    )
    parser.add_argument(
        "--log-level",
        choices=("debug", "info", "warning", "error"),
        default=None,
        help="Logging verbosity",
    )


def _load(args: argparse.Namespace) -> BridgeConfig:
    from gpubridge.backends.base import ConfigError
    from gpubridge.config import load_config

    try:
        return load_config(args.config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(2) from None


def _run_serve(args: argparse.Namespace) -> None:
    """Run the HTTP/WebSocket service until SIGINT/SIGTERM."""
    import uvicorn

    from gpubridge.web import create_app

    config = _load(args)

    # Override config with CLI args
    if args.mode is not None:
        config.monitor.mode = args.mode
    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.upstream is not None:
        config.relay.upstream_url = args.upstream.rstrip("/")
    if args.log_level is not None:
        config.server.log_level = args.log_level

    logging.basicConfig(level=config.server.log_level.upper(), format=_LOG_FORMAT)
    logger.info(
        "gpubridge %s (%s mode) listening on %s:%d",
        __version__,
        config.monitor.mode,
        config.server.host,
        config.server.port,
    )

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )


def _run_check(args: argparse.Namespace) -> None:
    """One-shot diagnostics: device directory and a process scan."""
    from gpubridge.attribution import ProcessAttributor

    config = _load(args)
    logging.basicConfig(level=logging.WARNING, format=_LOG_FORMAT)

    device_dir = Path(config.monitor.device_dir)
    attributor = ProcessAttributor.from_config(config.processes)
    processes = asyncio.run(attributor.scan())

    report = {
        "device_dir": str(device_dir),
        "device_dir_present": device_dir.is_dir(),
        "devices": sorted(p.name for p in device_dir.iterdir()) if device_dir.is_dir() else [],
        "strategy": attributor.last_strategy,
        "processes": [p.to_dict() for p in processes],
    }
    print(json.dumps(report, indent=2))


def main(argv: list[str] | None = None) -> None:
    """Entry point for the gpubridge CLI."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "check":
        _run_check(args)
    else:
        # Default to serve (both "serve" subcommand and no subcommand)
        _run_serve(args)
