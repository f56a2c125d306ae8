"""Best-effort media path attribution for transcoding processes."""

from __future__ import annotations

import re
from collections.abc import Sequence

MEDIA_EXTENSIONS = ("mp4", "mkv", "ts", "avi", "mov", "flac", "mp3", "webm", "wav")

# extension at the end of the argument or before a URL query/fragment
_MEDIA_RE = re.compile(
    r"\S\.(?:%s)(?=$|[?#&])" % "|".join(MEDIA_EXTENSIONS), re.IGNORECASE
)


def extract_media(command: str, name: str, args: Sequence[str]) -> str | None:
    """Guess which media file a GPU process is working on.

    ffmpeg: the argument after ``-i``.  Plex transcoder: the same, else the
    first argument ending in a known media extension.  Anything else: None.
    """
    label = f"{command} {name}".lower()
    if "ffmpeg" in label:
        return _input_argument(args)
    if "plex" in label:
        found = _input_argument(args)
        if found is None:
            found = next((a for a in args if _MEDIA_RE.search(a)), None)
        return found
    return None


def _input_argument(args: Sequence[str]) -> str | None:
    try:
        idx = list(args).index("-i")
    except ValueError:
        return None
    if idx + 1 < len(args):
        return args[idx + 1]
    return None
