"""Utility helpers for queue priorities."""
from __future__ import annotations

from typing import Dict

# Higher value is more urgent. Any integer is accepted; the named levels
# only label the usual 0..10 range.
PRIORITY_LEVELS: Dict[int, str] = {
    0: "background",
    2: "low",
    5: "normal",
    8: "high",
    10: "critical",
}

MIN_PRIORITY = 0
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


def normalize_priority(value: int | str | None, default: int = DEFAULT_PRIORITY) -> int:
    """Coerce external values to ``int``; ``None`` means ``default``."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Invalid priority: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid priority: {value!r}") from None


def priority_label(value: int) -> str:
    """Return the name of the closest level at or below ``value``."""
    clamped = max(MIN_PRIORITY, min(MAX_PRIORITY, normalize_priority(value)))
    level = max((lvl for lvl in PRIORITY_LEVELS if lvl <= clamped), default=MIN_PRIORITY)
    return PRIORITY_LEVELS[level]
