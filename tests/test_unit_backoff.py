import pytest

from gifter_jobs.jobs.models import BackoffPolicy
from gifter_jobs.utils.backoff import compute_backoff_seconds, delay_for_policy


def test_backoff_growth_and_cap():
    first = compute_backoff_seconds(1, base=1, factor=2, max_seconds=10, jitter_pct=0.0)
    second = compute_backoff_seconds(2, base=1, factor=2, max_seconds=10, jitter_pct=0.0)
    third = compute_backoff_seconds(3, base=1, factor=2, max_seconds=10, jitter_pct=0.0)
    assert first == 1
    assert second == 2
    assert third == 4
    capped = compute_backoff_seconds(10, base=1, factor=2, max_seconds=5, jitter_pct=0.0)
    assert capped <= 5


def test_policy_delays():
    assert delay_for_policy("fixed", 5.0, 1) == 5.0
    assert delay_for_policy("fixed", 5.0, 4) == 5.0
    assert delay_for_policy("exponential", 2.0, 1) == 2.0
    assert delay_for_policy("exponential", 2.0, 3) == 8.0
    assert BackoffPolicy(type="exponential", delay_seconds=2.0).delay_for(2) == 4.0


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        delay_for_policy("linear", 1.0, 1)
