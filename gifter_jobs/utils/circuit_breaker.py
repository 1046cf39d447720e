"""Process-local circuit breaker keyed by outbound collaborator.

Keys are collaborator names (``"openai"``, ``"unsplash"``). A key trips OPEN
after ``failure_threshold`` consecutive failures and rejects calls until the
cooldown has passed; it then admits a limited number of HALF_OPEN probes. One
probe success closes it again, one probe failure re-opens it.
"""
from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict

from gifter_jobs.config import CIRCUIT_BREAKER
from gifter_jobs.utils.time import utc_now


class BreakerStatus(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerState:
    state: BreakerStatus = BreakerStatus.CLOSED
    failures: int = 0
    opened_at: datetime | None = None
    probes_used: int = 0

    def trip(self, now: datetime) -> None:
        self.state = BreakerStatus.OPEN
        self.opened_at = now
        self.probes_used = 0


class CircuitBreaker:
    def __init__(
        self,
        *,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        probe_limit: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.failure_threshold = int(failure_threshold if failure_threshold is not None else CIRCUIT_BREAKER["failure_threshold"])
        self.cooldown = timedelta(
            seconds=float(cooldown_seconds if cooldown_seconds is not None else CIRCUIT_BREAKER["open_cooldown_seconds"])
        )
        self.probe_limit = int(probe_limit if probe_limit is not None else CIRCUIT_BREAKER["half_open_probe_count"])
        self._clock = clock
        self._states: Dict[str, BreakerState] = {}
        self._lock = threading.Lock()

    def _state(self, key: str) -> BreakerState:
        return self._states.setdefault(key, BreakerState())

    def allow_call(self, key: str) -> tuple[bool, str | None]:
        """``(True, None)`` when a call to ``key`` may proceed, else ``(False, reason)``."""
        with self._lock:
            st = self._state(key)
            if st.state is BreakerStatus.CLOSED:
                return True, None
            if st.state is BreakerStatus.OPEN:
                if st.opened_at is not None and self._clock() - st.opened_at < self.cooldown:
                    return False, "circuit_open"
                st.state = BreakerStatus.HALF_OPEN
                st.probes_used = 0
            if st.probes_used >= self.probe_limit:
                return False, "half_open_probe_exhausted"
            st.probes_used += 1
            return True, None

    def record_success(self, key: str) -> None:
        with self._lock:
            self._states[key] = BreakerState()

    def record_failure(self, key: str) -> None:
        with self._lock:
            st = self._state(key)
            st.failures += 1
            if st.state is BreakerStatus.HALF_OPEN:
                st.trip(self._clock())
            elif st.state is BreakerStatus.CLOSED and st.failures >= self.failure_threshold:
                st.trip(self._clock())

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                key: {
                    "state": st.state.value,
                    "failures": st.failures,
                    "opened_at": st.opened_at.isoformat() if st.opened_at else None,
                    "probes_used": st.probes_used,
                }
                for key, st in self._states.items()
            }


# Shared by the generation and image services unless one is injected
GLOBAL_CIRCUIT_BREAKER = CircuitBreaker()

__all__ = ["BreakerStatus", "CircuitBreaker", "GLOBAL_CIRCUIT_BREAKER"]
