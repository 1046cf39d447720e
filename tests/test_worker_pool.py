import time

import pytest

from gifter_jobs.jobs.handlers import DEFAULT_HANDLERS, HandlerRegistry
from gifter_jobs.jobs.models import (
    BackoffPolicy,
    JobOptions,
    JobResult,
    JobState,
    NonRetryableJobError,
)
from gifter_jobs.jobs.payloads import ProductEmbeddingPayload, ProductEnrichmentPayload
from gifter_jobs.jobs.queue import TaskQueue
from gifter_jobs.jobs.worker import WorkerPool


def _payload(product_id: str = "P1") -> ProductEmbeddingPayload:
    return ProductEmbeddingPayload(product_id=product_id, provider="openai", model="embed-test", dims=4)


def _no_backoff(max_attempts: int = 3) -> JobOptions:
    return JobOptions(max_attempts=max_attempts, backoff=BackoffPolicy("fixed", 0.0))


def _drain(pool: WorkerPool, limit: int = 10) -> list:
    processed = []
    for _ in range(limit):
        record = pool.process_next(timeout=0.0)
        if record is None:
            break
        processed.append(record)
    return processed


def test_failing_handler_runs_exactly_max_attempts():
    queue = TaskQueue("product-embedding")
    calls = []

    def handler(record):
        calls.append(record.attempts_made)
        raise RuntimeError("provider unavailable")

    pool = WorkerPool(queue, handler)
    enqueued = queue.enqueue(_payload(), options=_no_backoff(3))
    _drain(pool)

    assert calls == [1, 2, 3]
    final = queue.get(enqueued.record.job_id)
    assert final.state == JobState.FAILED
    assert final.last_error == "RuntimeError: provider unavailable"


def test_skipped_result_is_acknowledged_not_retried():
    queue = TaskQueue("product-embedding")
    calls = []

    def handler(record):
        calls.append(record.job_id)
        return JobResult.skip("unchanged-hash", product_id=record.payload.product_id)

    pool = WorkerPool(queue, handler)
    enqueued = queue.enqueue(_payload(), options=_no_backoff(3))
    _drain(pool)

    assert len(calls) == 1
    record = queue.get(enqueued.record.job_id)
    assert record.state == JobState.COMPLETED
    assert record.result.skipped is True
    assert record.result.skip_reason == "unchanged-hash"


def test_non_retryable_error_fails_on_first_attempt():
    queue = TaskQueue("product-embedding")
    calls = []

    def handler(record):
        calls.append(record.attempts_made)
        raise NonRetryableJobError("malformed payload")

    pool = WorkerPool(queue, handler)
    enqueued = queue.enqueue(_payload(), options=_no_backoff(5))
    _drain(pool)

    assert calls == [1]
    assert queue.get(enqueued.record.job_id).state == JobState.FAILED


def test_pool_threads_process_jobs_and_stop():
    queue = TaskQueue("product-embedding")
    done = []

    def handler(record):
        done.append(record.payload.product_id)
        return JobResult(output={"product_id": record.payload.product_id})

    pool = WorkerPool(queue, handler, concurrency=2, poll_timeout=0.05)
    for pid in ("P1", "P2", "P3"):
        queue.enqueue(_payload(pid))
    pool.start()
    try:
        for _ in range(200):
            if queue.snapshot()["completed"] == 3:
                break
            time.sleep(0.01)
    finally:
        pool.stop(timeout=2.0)
    assert sorted(done) == ["P1", "P2", "P3"]
    assert pool.is_running() is False


def test_invalid_concurrency_rejected():
    with pytest.raises(ValueError):
        WorkerPool(TaskQueue("product-embedding"), lambda record: JobResult(), concurrency=0)


def test_registry_requires_every_kind(job_system):
    partial = {k: v for k, v in DEFAULT_HANDLERS.items() if k is not ProductEnrichmentPayload}
    with pytest.raises(ValueError) as exc:
        HandlerRegistry(job_system, partial)
    assert "product-enrichment" in str(exc.value)
    assert "product-embedding" in HandlerRegistry(job_system).kinds()


def test_job_system_enqueue_is_idempotent(job_system):
    first = job_system.enqueue(_payload("P9"))
    second = job_system.enqueue(_payload("P9"))
    assert first.created is True
    assert second.created is False
    assert second.record.job_id == first.record.job_id
    assert first.record.idempotency_key == "product-embedding-P9"
    with pytest.raises(KeyError):
        job_system.queue("unknown-queue")


def test_heartbeat_keeps_long_job_leased():
    queue = TaskQueue("curated-collections", lease_seconds=0.3)
    stolen = []

    def handler(record):
        for _ in range(8):
            time.sleep(0.1)
            stolen.append(queue.reserve(block=False))
        return JobResult(output={"product_id": record.payload.product_id})

    pool = WorkerPool(queue, handler, heartbeat_interval=0.05)
    enqueued = queue.enqueue(_payload(), options=_no_backoff(1))
    done = pool.process_next(timeout=0.0)

    assert stolen == [None] * 8
    assert done.job_id == enqueued.record.job_id
    assert done.state == JobState.COMPLETED
    assert done.attempts_made == 1


def test_heartbeat_interval_follows_queue_lease():
    pool = WorkerPool(TaskQueue("curated-collections", lease_seconds=900), lambda record: JobResult())
    assert pool.heartbeat_interval == pytest.approx(300.0)
