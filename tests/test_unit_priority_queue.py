import pytest

from conftest import FakeClock
from gifter_jobs.jobs.models import (
    BackoffPolicy,
    JobOptions,
    JobResult,
    JobState,
    QueueDefaults,
    QueueShutdownError,
    RetentionPolicy,
)
from gifter_jobs.jobs.payloads import ProductEmbeddingPayload
from gifter_jobs.jobs.queue import TaskQueue
from gifter_jobs.utils.priority import resolve_priority


def _payload(product_id: str) -> ProductEmbeddingPayload:
    return ProductEmbeddingPayload(product_id=product_id, provider="openai", model="embed-test", dims=4)


@pytest.fixture()
def queue(clock):
    return TaskQueue(
        "product-embedding",
        defaults=QueueDefaults(priority=3, max_attempts=3, backoff=BackoffPolicy("exponential", 2.0)),
        lease_seconds=30,
        clock=clock,
    )


def test_priority_queue_ordering(queue):
    queue.enqueue(_payload("P-low"), options=JobOptions(priority="low"))
    queue.enqueue(_payload("P-high"), options=JobOptions(priority="high"))
    queue.enqueue(_payload("P-normal"), options=JobOptions(priority="normal"))
    snap = queue.snapshot()
    assert snap.get("waiting") == 3
    assert snap.get("depth") == 3
    order = [queue.reserve(block=False).payload.product_id for _ in range(3)]
    assert order == ["P-high", "P-normal", "P-low"]


def test_equal_priority_is_fifo(queue):
    for pid in ("P1", "P2", "P3"):
        queue.enqueue(_payload(pid))
    assert [queue.reserve(block=False).payload.product_id for _ in range(3)] == ["P1", "P2", "P3"]


def test_idempotent_enqueue_while_active(queue):
    first = queue.enqueue(_payload("P1"))
    second = queue.enqueue(_payload("P1"))
    assert first.created is True
    assert second.created is False
    assert second.record.job_id == first.record.job_id
    assert len(queue.records()) == 1

    # Still deduplicated while the job is leased
    reserved = queue.reserve(block=False)
    assert queue.enqueue(_payload("P1")).created is False

    queue.complete(reserved.job_id, JobResult(), lease_token=reserved.lease_token)
    again = queue.enqueue(_payload("P1"))
    assert again.created is True
    assert again.record.job_id != first.record.job_id


def test_delayed_job_waits_for_ready_time(queue, clock):
    queue.enqueue(_payload("P1"), options=JobOptions(delay_seconds=60))
    assert queue.snapshot()["delayed"] == 1
    assert queue.reserve(block=False) is None
    clock.advance(61)
    record = queue.reserve(block=False)
    assert record is not None
    assert record.state == JobState.ACTIVE
    assert record.attempts_made == 1


def test_retry_uses_backoff_then_fails_terminally(queue, clock):
    queue.enqueue(_payload("P1"))
    record = queue.reserve(block=False)
    after_first = queue.fail(record.job_id, RuntimeError("boom"), lease_token=record.lease_token)
    assert after_first.state == JobState.DELAYED
    assert after_first.ready_at == pytest.approx(clock.now + 2.0)
    assert queue.reserve(block=False) is None

    clock.advance(2.0)
    record = queue.reserve(block=False)
    assert record.attempts_made == 2
    after_second = queue.fail(record.job_id, RuntimeError("boom"), lease_token=record.lease_token)
    assert after_second.ready_at == pytest.approx(clock.now + 4.0)

    clock.advance(4.0)
    record = queue.reserve(block=False)
    final = queue.fail(record.job_id, RuntimeError("boom"), lease_token=record.lease_token)
    assert final.state == JobState.FAILED
    assert final.attempts_made == 3
    assert final.last_error == "RuntimeError: boom"
    # Terminal failure frees the key
    assert queue.find_active("product-embedding-P1") is None
    assert queue.get(final.job_id).state == JobState.FAILED


def test_non_retryable_failure_skips_backoff(queue):
    queue.enqueue(_payload("P1"))
    record = queue.reserve(block=False)
    failed = queue.fail(record.job_id, "bad payload", retryable=False, lease_token=record.lease_token)
    assert failed.state == JobState.FAILED
    assert failed.attempts_made == 1


def test_expired_lease_is_redelivered(queue, clock):
    queue.enqueue(_payload("P1"))
    first = queue.reserve(block=False)
    clock.advance(31)
    second = queue.reserve(block=False)
    assert second is not None
    assert second.job_id == first.job_id
    assert second.attempts_made == 2
    # The first holder's acknowledgement is ignored
    assert queue.complete(first.job_id, JobResult(), lease_token=first.lease_token) is None
    done = queue.complete(second.job_id, JobResult(), lease_token=second.lease_token)
    assert done.state == JobState.COMPLETED


def test_extended_lease_outlives_original_deadline(clock):
    queue = TaskQueue("curated-collections", lease_seconds=300, clock=clock)
    queue.enqueue(_payload("P1"), options=JobOptions(max_attempts=1))
    first = queue.reserve(block=False)

    clock.advance(200)
    assert queue.extend_lease(first.job_id, first.lease_token) is True
    assert queue.extend_lease(first.job_id, "someone-else") is False
    clock.advance(200)
    assert queue.reserve(block=False) is None

    done = queue.complete(first.job_id, JobResult(), lease_token=first.lease_token)
    assert done.state == JobState.COMPLETED
    assert done.attempts_made == 1
    assert queue.extend_lease(first.job_id, first.lease_token) is False


def test_completed_retention_by_count(clock):
    queue = TaskQueue(
        "product-embedding",
        retention=(RetentionPolicy(count=2), RetentionPolicy(count=2)),
        clock=clock,
    )
    ids = []
    for pid in ("P1", "P2", "P3"):
        queue.enqueue(_payload(pid))
        record = queue.reserve(block=False)
        queue.complete(record.job_id, JobResult(output={"product_id": pid}), lease_token=record.lease_token)
        ids.append(record.job_id)
    assert queue.get(ids[0]) is None
    assert queue.get(ids[2]).result.output == {"product_id": "P3"}
    assert queue.snapshot()["completed"] == 2


def test_completed_retention_by_age():
    clock = FakeClock()
    queue = TaskQueue(
        "product-embedding",
        retention=(RetentionPolicy(age_seconds=60), RetentionPolicy()),
        clock=clock,
    )
    queue.enqueue(_payload("P1"))
    old = queue.reserve(block=False)
    queue.complete(old.job_id, JobResult(), lease_token=old.lease_token)
    clock.advance(120)
    queue.enqueue(_payload("P2"))
    new = queue.reserve(block=False)
    queue.complete(new.job_id, JobResult(), lease_token=new.lease_token)
    assert queue.get(old.job_id) is None
    assert queue.get(new.job_id) is not None


def test_shutdown_rejects_enqueue_and_releases_reserve(queue):
    queue.shutdown()
    assert queue.reserve(block=True, timeout=1.0) is None
    with pytest.raises(QueueShutdownError):
        queue.enqueue(_payload("P1"))


def test_resolve_priority_labels_and_numbers():
    assert resolve_priority(None, 3) == 3
    assert resolve_priority("critical", 3) == 1
    assert resolve_priority("LOW", 3) == 4
    assert resolve_priority(7, 3) == 7
    with pytest.raises(ValueError):
        resolve_priority("urgent", 3)
    with pytest.raises(ValueError):
        resolve_priority(-1, 3)
