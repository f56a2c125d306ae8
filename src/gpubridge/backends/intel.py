"""Embedded backend: supervise ``intel_gpu_top`` and scan GPU holders."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import psutil  # type: ignore[import-untyped]

from gpubridge.attribution import ProcessAttributor
from gpubridge.backends.base import GpuProcessEntry, SnapshotEntry, StatsBackend
from gpubridge.framer import JsonObjectFramer

if TYPE_CHECKING:
    from gpubridge.config import MonitorConfig, ProcessesConfig
    from gpubridge.store import SnapshotStore

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_KILL_TIMEOUT_S = 5.0

# stderr substrings (lowercased) that mean no data is coming
FATAL_STDERR_PATTERNS = ("no device found", "permission denied")


class SupervisorState(enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPED = "stopped"


class StatsSupervisor:
    """Own the statistics utility: spawn, pump, detect crashes, restart.

    Restarts happen after a fixed delay, forever.  Each spawn gets a new
    generation number; a pending restart or exit watcher from an older
    generation does nothing, so a manual restart is never doubled up.
    """

    def __init__(
        self,
        command: Sequence[str],
        store: SnapshotStore,
        *,
        device_dir: Path = Path("/dev/dri"),
        restart_delay: float = 5.0,
        buffer_limit: int = 100_000,
        string_aware: bool = False,
    ) -> None:
        self._command = list(command)
        self._store = store
        self._device_dir = device_dir
        self._restart_delay = restart_delay
        self._buffer_limit = buffer_limit
        self._string_aware = string_aware

        self._state = SupervisorState.NOT_STARTED
        self._proc: asyncio.subprocess.Process | None = None
        self._generation = 0
        self._restart_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._stopping = False
        self.spawn_count = 0

    @classmethod
    def from_config(cls, config: MonitorConfig, store: SnapshotStore) -> StatsSupervisor:
        return cls(
            config.command(),
            store,
            device_dir=Path(config.device_dir),
            restart_delay=config.restart_delay_seconds,
            buffer_limit=config.buffer_limit_bytes,
            string_aware=config.string_aware_framing,
        )

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    # --- lifecycle ---

    async def start(self) -> None:
        """Spawn the utility unless the GPU device directory is missing.

        A missing device directory is permanent for this process lifetime:
        the state stays NOT_STARTED and no retry is scheduled.
        """
        if not self._device_dir.is_dir():
            logger.error(
                "%s not found; GPU not available. The container may not have "
                "access to GPU devices.",
                self._device_dir,
            )
            return
        try:
            devices = sorted(p.name for p in self._device_dir.iterdir())
            logger.info("DRI devices: %s", ", ".join(devices) or "(none)")
        except OSError as exc:
            logger.warning("Error reading %s: %s", self._device_dir, exc)
        await self._spawn()

    async def stop(self) -> None:
        """Kill the utility (and anything it spawned); schedule nothing more."""
        self._stopping = True
        self._cancel_restart_timer()
        proc = self._proc
        self._proc = None
        if proc is not None:
            await _kill_process_tree(proc)
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._store.mark_unavailable()
        self._state = SupervisorState.STOPPED

    async def restart(self) -> None:
        """Replace the running utility right away."""
        if self._stopping or self._state is SupervisorState.NOT_STARTED:
            return
        logger.info("Restarting %s on request", self._command[0])
        self._generation += 1
        self._cancel_restart_timer()
        proc = self._proc
        self._proc = None
        if proc is not None:
            await _kill_process_tree(proc)
        self._store.mark_unavailable()
        await self._spawn()

    def request_restart(self) -> None:
        """Schedule :meth:`restart` from synchronous code (signal handlers)."""
        self._track(asyncio.get_running_loop().create_task(self.restart()))

    # --- internals ---

    async def _spawn(self) -> None:
        self._generation += 1
        generation = self._generation
        self._state = SupervisorState.STARTING
        self.spawn_count += 1
        logger.info("Spawning %s", " ".join(self._command))

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to start %s: %s", self._command[0], exc)
            self._store.mark_unavailable()
            self._state = SupervisorState.CRASHED
            self._schedule_restart(generation)
            return

        if self._stopping:
            await _kill_process_tree(proc)
            return

        self._proc = proc
        self._state = SupervisorState.RUNNING
        framer = JsonObjectFramer(self._buffer_limit, string_aware=self._string_aware)
        self._track(asyncio.get_running_loop().create_task(self._watch(proc, framer, generation)))

    async def _watch(
        self,
        proc: asyncio.subprocess.Process,
        framer: JsonObjectFramer,
        generation: int,
    ) -> None:
        assert proc.stdout is not None
        assert proc.stderr is not None
        try:
            await asyncio.gather(
                self._pump_stdout(proc.stdout, framer),
                self._pump_stderr(proc.stderr),
            )
        except Exception:
            logger.exception("Error reading output of %s", self._command[0])
        code = await proc.wait()

        if self._stopping or generation != self._generation:
            return
        logger.warning("%s exited with code %s", self._command[0], code)
        self._proc = None
        self._store.mark_unavailable()
        self._state = SupervisorState.CRASHED
        self._schedule_restart(generation)

    async def _pump_stdout(self, stream: asyncio.StreamReader, framer: JsonObjectFramer) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            for obj in framer.feed(chunk):
                if isinstance(obj, dict):
                    self._store.publish(obj)
                else:
                    logger.debug("Ignoring non-object JSON value from %s", self._command[0])

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.debug("Discarding overlong stderr line from %s", self._command[0])
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            logger.warning("%s stderr: %s", self._command[0], text)
            lowered = text.lower()
            if any(pattern in lowered for pattern in FATAL_STDERR_PATTERNS):
                self._store.mark_unavailable()

    def _schedule_restart(self, generation: int) -> None:
        if self._stopping:
            return
        self._cancel_restart_timer()
        loop = asyncio.get_running_loop()
        self._restart_timer = loop.call_later(
            self._restart_delay, self._on_restart_timer, generation
        )

    def _on_restart_timer(self, generation: int) -> None:
        self._restart_timer = None
        if self._stopping or generation != self._generation or self._proc is not None:
            return
        self._track(asyncio.get_running_loop().create_task(self._spawn()))

    def _cancel_restart_timer(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None

    def _track(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


async def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL *proc* and any children, then reap it."""
    if proc.returncode is None:
        try:
            children = psutil.Process(proc.pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        for child in children:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.kill()
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_TIMEOUT_S)
    except asyncio.TimeoutError:
        logger.warning("Process %d did not exit after SIGKILL", proc.pid)


class IntelGpuTopBackend(StatsBackend):
    """Embedded mode: local ``intel_gpu_top`` plus periodic holder scans."""

    mode = "embedded"

    def __init__(
        self,
        store: SnapshotStore,
        supervisor: StatsSupervisor,
        attributor: ProcessAttributor,
        *,
        scan_interval: float = 2.0,
    ) -> None:
        super().__init__(store)
        self.supervisor = supervisor
        self.attributor = attributor
        self._scan_interval = scan_interval
        self._scan_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        monitor: MonitorConfig,
        processes: ProcessesConfig,
        store: SnapshotStore,
    ) -> IntelGpuTopBackend:
        return cls(
            store,
            StatsSupervisor.from_config(monitor, store),
            ProcessAttributor.from_config(processes),
            scan_interval=processes.scan_interval_seconds,
        )

    async def start(self) -> None:
        await self.supervisor.start()
        self._scan_task = asyncio.get_running_loop().create_task(self._scan_loop())

    async def stop(self) -> None:
        if self._scan_task is not None:
            self._scan_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._scan_task
            self._scan_task = None
        await self.supervisor.stop()

    async def snapshot(self) -> SnapshotEntry:
        return self.store.current

    async def refresh_processes(self) -> Sequence[GpuProcessEntry] | None:
        if not self.store.available:
            return None
        processes = await self.attributor.scan()
        self.store.replace_processes(processes)
        return tuple(processes)

    def request_restart(self) -> None:
        self.supervisor.request_restart()

    @property
    def restart_count(self) -> int:
        return max(self.supervisor.spawn_count - 1, 0)

    async def _scan_loop(self) -> None:
        while True:
            await asyncio.sleep(self._scan_interval)
            try:
                await self.refresh_processes()
            except Exception:
                logger.warning("GPU process scan failed", exc_info=True)
