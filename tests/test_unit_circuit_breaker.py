from datetime import datetime, timedelta, timezone

from gifter_jobs.utils.circuit_breaker import BreakerStatus, CircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 12, 1, 6, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def test_circuit_opens_and_half_open_cycle():
    clock = FakeClock()
    cb = CircuitBreaker(clock=clock)
    collaborator = "openai"
    # Failure threshold from config is 5; exceed it
    for _ in range(6):
        cb.record_failure(collaborator)
    assert cb.allow_call(collaborator) == (False, "circuit_open")
    assert cb.snapshot()[collaborator]["state"] == "OPEN"

    clock.advance(299)
    assert cb.allow_call(collaborator) == (False, "circuit_open")

    clock.advance(1)
    probes = [cb.allow_call(collaborator) for _ in range(4)]
    assert [p[0] for p in probes] == [True, True, True, False]
    assert probes[-1][1] == "half_open_probe_exhausted"

    cb.record_success(collaborator)
    assert cb.allow_call(collaborator) == (True, None)
    assert cb.snapshot()[collaborator] == {"state": "CLOSED", "failures": 0, "opened_at": None, "probes_used": 0}


def test_failure_in_half_open_reopens():
    clock = FakeClock()
    cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60, probe_limit=1, clock=clock)
    cb.record_failure("unsplash")
    assert cb._states["unsplash"].state is BreakerStatus.OPEN

    clock.advance(60)
    allowed, _ = cb.allow_call("unsplash")
    assert allowed is True
    assert cb._states["unsplash"].state is BreakerStatus.HALF_OPEN

    cb.record_failure("unsplash")
    assert cb._states["unsplash"].state is BreakerStatus.OPEN
    assert cb._states["unsplash"].opened_at == clock.now
    assert cb.allow_call("unsplash") == (False, "circuit_open")


def test_keys_are_independent_and_reset():
    cb = CircuitBreaker(failure_threshold=2)
    cb.record_failure("openai")
    cb.record_failure("openai")
    assert cb.allow_call("openai")[0] is False
    assert cb.allow_call("unsplash") == (True, None)
    cb.reset("openai")
    assert cb.allow_call("openai") == (True, None)
