"""Bounded-concurrency worker pool pulling jobs from one queue."""
from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Protocol, Union

from gifter_jobs.config import QUEUE_DEFAULTS, QUEUE_SETTINGS, WORKER_SETTINGS
from gifter_jobs.jobs.models import (
    EnqueueResult,
    JobOptions,
    JobRecord,
    JobResult,
    NonRetryableJobError,
    QueueDefaults,
)
from gifter_jobs.jobs.payloads import JobPayload
from gifter_jobs.jobs.queue import TaskQueue
from gifter_jobs.jobs.redis_queue import RedisTaskQueue
from gifter_jobs.utils import get_logger, log_performance

logger = get_logger(__name__)

JobHandler = Callable[[JobRecord], JobResult]


class QueueProtocol(Protocol):
    name: str
    lease_seconds: float
    def enqueue(self, payload: JobPayload, idempotency_key: str | None = None, options: JobOptions | None = None) -> EnqueueResult: ...
    def reserve(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[JobRecord]: ...
    def complete(self, job_id: str, result: JobResult, *, lease_token: Optional[str] = None) -> Optional[JobRecord]: ...
    def fail(self, job_id: str, error: BaseException | str, *, retryable: bool = True, lease_token: Optional[str] = None) -> Optional[JobRecord]: ...
    def get(self, job_id: str) -> Optional[JobRecord]: ...
    def extend_lease(self, job_id: str, lease_token: str) -> bool: ...
    def shutdown(self) -> None: ...
    def snapshot(self) -> dict: ...


class WorkerPool:
    """Runs ``concurrency`` daemon threads, each reserving and executing one job at a time.

    A handler either returns a :class:`JobResult` (acknowledged, never retried,
    skipped or not) or raises. Raising :class:`NonRetryableJobError` fails the
    job terminally; any other exception hands it back to the queue for retry.
    """

    def __init__(
        self,
        queue: QueueProtocol,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        poll_timeout: float | None = None,
        heartbeat_interval: float | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_timeout = float(poll_timeout if poll_timeout is not None else WORKER_SETTINGS.get("poll_timeout", 5.0))  # type: ignore[arg-type]
        beats = int(WORKER_SETTINGS.get("heartbeats_per_lease", 3))  # type: ignore[arg-type]
        self.heartbeat_interval = float(heartbeat_interval if heartbeat_interval is not None else queue.lease_seconds / max(beats, 1))
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._in_flight = 0
        self._counter_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.queue.name

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):  # pragma: no cover
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"{self.name}-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Worker pool started", queue=self.name, concurrency=self.concurrency)

    def stop(self, *, drain: bool = True, timeout: float | None = None) -> None:
        """Stop reserving new jobs; with ``drain`` wait for in-flight jobs to finish."""
        self._stop_event.set()
        logger.info("Worker pool stop requested", queue=self.name, in_flight=self._in_flight)
        if drain:
            self.join(timeout)

    def join(self, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.process_next(timeout=self.poll_timeout)
            except Exception as e:  # pragma: no cover
                logger.error("Worker loop error", queue=self.name, error=str(e), exc_info=True)
                time.sleep(1)

    def process_next(self, timeout: float | None = 0.0) -> Optional[JobRecord]:
        """Reserve and execute at most one job; returns the acknowledged record or None."""
        record = self.queue.reserve(block=bool(timeout), timeout=timeout)
        if record is None:
            return None
        with self._counter_lock:
            self._in_flight += 1
        try:
            return self._execute(record)
        finally:
            with self._counter_lock:
                self._in_flight -= 1

    def _start_heartbeat(self, record: JobRecord, job_log) -> threading.Event:
        """Renew the lease every ``heartbeat_interval`` until the returned event is set."""
        done = threading.Event()
        lease_token = record.lease_token
        if lease_token is None:
            return done

        def beat() -> None:
            while not done.wait(self.heartbeat_interval):
                if not self.queue.extend_lease(record.job_id, lease_token):
                    job_log.warning("Lease lost while job still running")
                    return

        threading.Thread(target=beat, name=f"{self.name}-heartbeat", daemon=True).start()
        return done

    def _execute(self, record: JobRecord) -> Optional[JobRecord]:
        job_log = logger.bind(queue=record.queue, job_id=record.job_id)
        job_log.info("Processing job", idempotency_key=record.idempotency_key, attempt=record.attempts_made)
        started = time.perf_counter()
        heartbeat = self._start_heartbeat(record, job_log)
        try:
            try:
                result = self.handler(record)
            finally:
                heartbeat.set()
        except NonRetryableJobError as e:
            job_log.error("Job rejected as non-retryable", error=str(e))
            return self.queue.fail(record.job_id, e, retryable=False, lease_token=record.lease_token)
        except Exception as e:
            job_log.error("Job attempt failed", attempt=record.attempts_made, error=str(e), exc_info=True)
            return self.queue.fail(record.job_id, e, lease_token=record.lease_token)
        elapsed_ms = (time.perf_counter() - started) * 1000
        if not result.processing_time_ms:
            result.processing_time_ms = int(elapsed_ms)
        log_performance(f"job:{record.queue}", elapsed_ms, {"job_id": record.job_id, "skipped": result.skipped})
        if result.skipped:
            job_log.info("Job skipped", skip_reason=result.skip_reason)
        return self.queue.complete(record.job_id, result, lease_token=record.lease_token)


def create_queue(name: str) -> Union[TaskQueue, RedisTaskQueue]:
    """Create the queue for ``name`` using the backend selected in configuration."""
    defaults = QueueDefaults.from_config(QUEUE_DEFAULTS.get(name))  # type: ignore[arg-type]
    if QUEUE_SETTINGS.get("use_redis", False):
        redis_queue = RedisTaskQueue(name, defaults=defaults)
        if redis_queue.health_check():
            logger.info("Using Redis-backed queue", queue=name)
            return redis_queue
        logger.warning("Redis connection failed, using in-memory queue", queue=name)
    logger.info("Using in-memory queue", queue=name)
    return TaskQueue(name, defaults=defaults)


__all__ = ["WorkerPool", "JobHandler", "QueueProtocol", "create_queue"]
