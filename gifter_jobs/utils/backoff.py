"""Retry delay helpers (exponential or fixed) with optional jitter."""
from __future__ import annotations

import random
from typing import Optional

from gifter_jobs.config import BACKOFF_POLICY


def compute_backoff_seconds(attempt: int, *, base: Optional[float] = None, factor: Optional[float] = None, max_seconds: Optional[float] = None, jitter_pct: Optional[float] = None) -> float:
    """Compute the delay before retry number ``attempt`` (1-based).

    delay = base * factor^(attempt-1), capped at ``max_seconds``. A factor of 1
    yields a fixed delay.
    """
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else BACKOFF_POLICY["base_seconds"])  # type: ignore[arg-type]
    factor = float(factor if factor is not None else BACKOFF_POLICY["factor"])   # type: ignore[arg-type]
    max_seconds = float(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])  # type: ignore[arg-type]
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])  # type: ignore[arg-type]

    delay = base * (factor ** (attempt - 1))
    delay = min(delay, max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


def delay_for_policy(policy_type: str, base_seconds: float, attempt: int) -> float:
    """Map a job backoff policy onto :func:`compute_backoff_seconds`."""
    if policy_type == "fixed":
        return compute_backoff_seconds(attempt, base=base_seconds, factor=1)
    if policy_type == "exponential":
        return compute_backoff_seconds(attempt, base=base_seconds, factor=2)
    raise ValueError(f"Unknown backoff type: {policy_type}")


__all__ = ["compute_backoff_seconds", "delay_for_policy"]
