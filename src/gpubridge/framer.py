"""Incremental JSON object framing over an undelimited byte stream.

``intel_gpu_top -J`` writes a loosely formatted array of objects with no
length prefixes or record separators.  Objects are recovered purely by
brace balance:

    framer = JsonObjectFramer()
    for obj in framer.feed(chunk):
        ...

By default braces are counted naively, without regard to JSON string
literals.  Balanced braces inside a string (``{"msg": "a{b}c"}``) still
frame correctly; an unbalanced brace inside a string throws the depth
count off until a later unmatched ``}`` brings it back.  Pass
``string_aware=True`` to skip braces that appear inside string literals.
"""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_LIMIT = 100_000

_OPEN = ord("{")
_CLOSE = ord("}")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")


class JsonObjectFramer:
    """Turn arbitrary byte chunks into decoded top-level JSON objects."""

    def __init__(
        self,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
        *,
        string_aware: bool = False,
    ) -> None:
        self._buffer_limit = buffer_limit
        self._string_aware = string_aware
        self._buffer = bytearray()
        self._depth = 0
        self._in_object = False
        self._start = 0
        self._in_string = False
        self._escaped = False
        self.dropped = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def in_object(self) -> bool:
        return self._in_object

    def reset(self) -> None:
        """Forget any partial object and buffered noise."""
        self._buffer.clear()
        self._depth = 0
        self._in_object = False
        self._start = 0
        self._in_string = False
        self._escaped = False

    def feed(self, chunk: bytes) -> list[Any]:
        """Consume *chunk* and return every object it completed, in order."""
        objects: list[Any] = []
        buf = self._buffer

        for byte in chunk:
            buf.append(byte)

            if self._string_aware and self._in_object and self._skip_string_byte(byte):
                continue

            if byte == _OPEN:
                if not self._in_object:
                    self._in_object = True
                    self._start = len(buf) - 1
                self._depth += 1
            elif byte == _CLOSE and self._in_object:
                self._depth -= 1
                if self._depth == 0:
                    obj = self._decode(bytes(buf[self._start :]))
                    if obj is not None:
                        objects.append(obj)
                    self.reset()

        if len(buf) > self._buffer_limit and not self._in_object:
            logger.debug("Discarding %d bytes of non-JSON output", len(buf))
            buf.clear()

        return objects

    def _skip_string_byte(self, byte: int) -> bool:
        """Track string state; return True if *byte* is inside a string."""
        if self._in_string:
            if self._escaped:
                self._escaped = False
            elif byte == _BACKSLASH:
                self._escaped = True
            elif byte == _QUOTE:
                self._in_string = False
            return True
        if byte == _QUOTE:
            self._in_string = True
            return True
        return False

    def _decode(self, raw: bytes) -> Any | None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self.dropped += 1
            logger.debug("Dropping malformed object (%d bytes): %s", len(raw), exc)
            return None
