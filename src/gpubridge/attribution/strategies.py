"""Ways of discovering which processes hold the GPU device.

Each strategy's ``discover()`` returns a list (possibly empty) when it could
run, or ``None`` when it is unavailable on this host.
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import shutil
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from gpubridge.attribution.cmdline import display_name, read_cmdline, split_cmdline
from gpubridge.attribution.media import extract_media
from gpubridge.backends.base import GpuProcessEntry

logger = logging.getLogger(__name__)

DEFAULT_CLIENTS_PATH = Path("/sys/kernel/debug/dri/0/clients")
DEFAULT_DEVICE_GLOBS = ("/dev/dri/render*", "/dev/dri/card*")
DEFAULT_PROC_ROOT = Path("/proc")


class DiscoveryStrategy(ABC):
    """One way of listing GPU device holders."""

    name: str = ""

    @abstractmethod
    async def discover(self) -> list[GpuProcessEntry] | None:
        """Return the current holders, or None if this strategy can't run."""


async def entry_from_cmdline(
    pid: int,
    command: str | None,
    proc_root: Path,
) -> GpuProcessEntry | None:
    """Build an entry for *pid* from its cmdline record.

    If the record can't be read, fall back to *command* with no media; when
    there is no command either, the process is skipped.
    """
    raw = await read_cmdline(pid, proc_root)
    if raw is None:
        if command is None:
            return None
        return GpuProcessEntry(name=command, pid=pid, command=command, media=None)

    args = split_cmdline(raw)
    if command is None:
        command = os.path.basename(args[0]) if args else "unknown"
    name = display_name(raw) or command
    try:
        media = extract_media(command, name, args)
    except Exception:
        logger.debug("Media attribution failed for pid=%d", pid, exc_info=True)
        media = None
    return GpuProcessEntry(name=name, pid=pid, command=command, media=media)


async def _run_listing(argv: Sequence[str]) -> str | None:
    """Run a listing utility; any exit code is fine, failure to run is None."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await proc.communicate()
    except OSError as exc:
        logger.debug("Could not run %s: %s", argv[0], exc)
        return None
    return stdout.decode("utf-8", errors="replace")


def _expand(globs: Sequence[str]) -> list[str]:
    paths: list[str] = []
    for pattern in globs:
        paths.extend(sorted(glob.glob(pattern)))
    return paths


# ---------------------------------------------------------------------------
# 1. Kernel DRM debug interface
# ---------------------------------------------------------------------------


class DriClientsStrategy(DiscoveryStrategy):
    """Read the DRM ``clients`` debugfs file (header line, then one client per line)."""

    name = "dri-clients"

    def __init__(
        self,
        clients_path: Path = DEFAULT_CLIENTS_PATH,
        proc_root: Path = DEFAULT_PROC_ROOT,
    ) -> None:
        self._clients_path = clients_path
        self._proc_root = proc_root

    async def discover(self) -> list[GpuProcessEntry] | None:
        try:
            text = await asyncio.to_thread(self._clients_path.read_text, errors="replace")
        except OSError:
            return None

        processes: list[GpuProcessEntry] = []
        for line in text.splitlines()[1:]:
            parts = line.split()
            if len(parts) < 2:
                continue
            command = parts[0]
            try:
                pid = int(parts[1])
            except ValueError:
                continue
            entry = await entry_from_cmdline(pid, command, self._proc_root)
            if entry is not None:
                processes.append(entry)
        return processes


# ---------------------------------------------------------------------------
# 2. lsof against the device nodes
# ---------------------------------------------------------------------------


class LsofStrategy(DiscoveryStrategy):
    """Parse ``lsof <device files>`` output (COMMAND and PID columns)."""

    name = "lsof"

    def __init__(self, device_globs: Sequence[str] = DEFAULT_DEVICE_GLOBS) -> None:
        self._device_globs = tuple(device_globs)

    async def discover(self) -> list[GpuProcessEntry] | None:
        binary = shutil.which("lsof")
        if binary is None:
            return None

        paths = _expand(self._device_globs)
        if not paths:
            # lsof with no file arguments lists every open file on the system
            return []

        output = await _run_listing([binary, *paths])
        if output is None:
            return None

        processes: list[GpuProcessEntry] = []
        seen: set[tuple[str, int]] = set()
        for line in output.splitlines()[1:]:
            parts = line.split()
            if len(parts) < 2:
                continue
            command = parts[0]
            try:
                pid = int(parts[1])
            except ValueError:
                continue
            if (command, pid) in seen:
                continue
            seen.add((command, pid))
            processes.append(GpuProcessEntry(name=command, pid=pid, command=command))
        return processes


# ---------------------------------------------------------------------------
# 3. fuser against the device nodes
# ---------------------------------------------------------------------------


class FuserStrategy(DiscoveryStrategy):
    """Parse the PIDs printed by ``fuser <device files>``."""

    name = "fuser"

    def __init__(
        self,
        device_globs: Sequence[str] = DEFAULT_DEVICE_GLOBS,
        proc_root: Path = DEFAULT_PROC_ROOT,
    ) -> None:
        self._device_globs = tuple(device_globs)
        self._proc_root = proc_root

    async def discover(self) -> list[GpuProcessEntry] | None:
        binary = shutil.which("fuser")
        if binary is None:
            return None

        paths = _expand(self._device_globs)
        if not paths:
            return []

        output = await _run_listing([binary, *paths])
        if output is None:
            return None

        pids: list[int] = []
        for token in output.split():
            if token.isdigit() and int(token) not in pids:
                pids.append(int(token))

        processes: list[GpuProcessEntry] = []
        for pid in pids:
            entry = await entry_from_cmdline(pid, None, self._proc_root)
            if entry is not None:
                processes.append(entry)
        return processes
