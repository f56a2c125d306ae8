"""Shared test fixtures for gpubridge tests."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from gpubridge.store import SnapshotStore


@pytest.fixture()
def store() -> SnapshotStore:
    return SnapshotStore()


@pytest.fixture()
def fake_proc(tmp_path: Path):
    """Create fake /proc/<pid>/cmdline files for attribution testing.

    Returns a helper with ``proc_dir`` and ``create_cmdline(pid, bytes)``.
    """
    proc_dir = tmp_path / "proc"
    proc_dir.mkdir()

    def create_cmdline(pid: int, cmdline_bytes: bytes) -> None:
        pid_dir = proc_dir / str(pid)
        pid_dir.mkdir(exist_ok=True)
        (pid_dir / "cmdline").write_bytes(cmdline_bytes)

    return type("ProcHelper", (), {
        "proc_dir": proc_dir,
        "create_cmdline": staticmethod(create_cmdline),
    })


@pytest.fixture()
def dri_dir(tmp_path: Path) -> Path:
    """A stand-in for /dev/dri with a couple of (regular) device files."""
    path = tmp_path / "dri"
    path.mkdir()
    (path / "card0").touch()
    (path / "renderD128").touch()
    return path


@pytest.fixture()
def fake_utility(tmp_path: Path):
    """Write a Python script standing in for intel_gpu_top; return its argv."""

    def make(body: str) -> list[str]:
        script = tmp_path / f"fake_gpu_top_{len(list(tmp_path.glob('fake_gpu_top_*')))}.py"
        script.write_text(
            "import json, sys, time\n"
            "def emit(obj):\n"
            "    sys.stdout.write(json.dumps(obj) + ',\\n')\n"
            "    sys.stdout.flush()\n"
            + textwrap.dedent(body)
        )
        return [sys.executable, str(script)]

    return make
