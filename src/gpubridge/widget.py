"""Dashboard widget summary derived from the current snapshot."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from gpubridge.backends.base import SnapshotEntry

PLACEHOLDER = "--"

# (title, subtext) in display order
_ITEMS = (
    ("GPU Usage", "%"),
    ("Frequency", "MHz"),
    ("Power", "W"),
    ("RC6 Idle", "%"),
)


def _number(value: Any) -> float:
    """Coerce a loosely typed field to float; anything unusable is 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def overall_busy(engines: Any) -> float:
    """Mean ``busy`` across every engine that reports one (0 if none do)."""
    if not isinstance(engines, Mapping):
        return 0.0
    values = [
        _number(engine["busy"])
        for engine in engines.values()
        if isinstance(engine, Mapping) and engine.get("busy") is not None
    ]
    if not values:
        return 0.0
    return sum(values) / len(values)


def placeholder_widget() -> dict[str, Any]:
    return {
        "items": [
            {"title": title, "text": PLACEHOLDER, "subtext": subtext}
            for title, subtext in _ITEMS
        ]
    }


def build_widget(entry: SnapshotEntry) -> dict[str, Any]:
    """Four labelled values, or the placeholder set when no data is available."""
    if not entry.available or entry.data is None:
        return placeholder_widget()

    data = entry.data
    busy = overall_busy(data.get("engines"))
    frequency = _number(_section(data, "frequency").get("actual"))
    power = _number(_section(data, "power").get("GPU"))
    rc6 = _number(_section(data, "rc6").get("value"))

    texts = (f"{busy:.1f}", f"{frequency:.0f}", f"{power:.1f}", f"{rc6:.1f}")
    return {
        "items": [
            {"title": title, "text": text, "subtext": subtext}
            for (title, subtext), text in zip(_ITEMS, texts)
        ]
    }
