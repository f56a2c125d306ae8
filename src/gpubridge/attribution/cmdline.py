"""Reading and cleaning ``/proc/<pid>/cmdline`` records."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

_MAX_READ = 64 * 1024
_MAX_LENGTH = 1024

# ANSI escape sequences: ESC[ ... final byte, or ESC followed by other sequences
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]|\x1b[()][AB012]|\x1b\].*?\x07|\x1b[^[\]()]")

# Control characters other than tab, plus DEL
_CONTROL_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


def sanitize_text(text: str) -> str:
    """Strip ANSI escapes, control chars, and truncate.

    Idempotent: sanitize_text(sanitize_text(x)) == sanitize_text(x).
    """
    result = _ANSI_RE.sub("", text)
    result = _CONTROL_RE.sub("", result)
    return result[:_MAX_LENGTH]


def split_cmdline(raw: bytes) -> list[str]:
    """Split a NUL-delimited argument record, dropping empty fields."""
    return [
        arg.decode("utf-8", errors="replace")
        for arg in raw.split(b"\x00")
        if arg
    ]


def display_name(raw: bytes) -> str:
    """Human-readable form of a cmdline record: arguments joined by spaces."""
    text = raw.replace(b"\x00", b" ").decode("utf-8", errors="replace").strip()
    return sanitize_text(text).strip()


def _read(path: Path) -> bytes | None:
    try:
        with open(path, "rb") as f:
            return f.read(_MAX_READ)
    except OSError:
        return None


async def read_cmdline(pid: int, proc_root: Path = Path("/proc")) -> bytes | None:
    """Return the raw cmdline record for *pid*, or None if the process is gone."""
    return await asyncio.to_thread(_read, proc_root / str(pid) / "cmdline")
