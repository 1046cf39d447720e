"""Priority utilities mapping labels or raw numbers to queue priorities."""
from __future__ import annotations

from gifter_jobs.config import QUEUE_SETTINGS


def resolve_priority(value: int | str | None, default: int) -> int:
    """Resolve ``value`` into a numeric priority (lower = more urgent).

    Accepts an int, a label from ``QUEUE_SETTINGS['priorities']`` or ``None``
    (queue default).
    """
    if value is None:
        return int(default)
    if isinstance(value, bool):
        raise ValueError("priority must be an int or a label")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("priority must be >= 0")
        return value
    priorities = QUEUE_SETTINGS["priorities"]  # type: ignore[index]
    label = str(value).strip().lower()
    if label not in priorities:  # type: ignore[operator]
        raise ValueError(f"Unknown priority label: {value}")
    return int(priorities[label])  # type: ignore[index]


__all__ = ["resolve_priority"]
