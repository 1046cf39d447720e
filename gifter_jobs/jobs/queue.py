"""In-memory task queue with idempotent enqueue, priority, delay, leases and retention.

Features:
- Idempotent enqueue: at most one non-terminal record per idempotency key.
- Priority ordering (lower numeric priority value = higher priority) within the queue.
- Optional delay (scheduled execution time) per job; retries re-enter through the same path.
- At-least-once delivery: a reserved job holds a lease; if the lease expires before
  ``complete``/``fail`` the job is redelivered.
- Retention of terminal records bounded by count and age.
- Thread-safe with condition variable.

Two-heaps strategy:
 1. ready_heap: (priority, seq, job_id)
 2. scheduled_heap: (ready_at_ts, priority, seq, job_id)

On enqueue / retry:
  - If ready_at <= now -> push to ready_heap else scheduled_heap.
On reserve:
  - Reclaim expired leases, promote scheduled items whose ready_at <= now.
  - Pop highest priority from ready_heap (ties resolved by seq FIFO).
  - If nothing ready: wait until the next scheduled item / lease expiry or until notified.
"""
from __future__ import annotations

from collections import deque
from dataclasses import replace
from typing import Callable, Optional
import heapq
import threading
import time
import uuid

from gifter_jobs.config import QUEUE_SETTINGS, RETENTION_POLICY
from gifter_jobs.jobs.models import (
    EnqueueResult,
    JobOptions,
    JobRecord,
    JobResult,
    JobState,
    QueueDefaults,
    QueueShutdownError,
    RetentionPolicy,
    error_message,
)
from gifter_jobs.jobs.payloads import JobPayload
from gifter_jobs.utils import get_logger
from gifter_jobs.utils.priority import resolve_priority

logger = get_logger(__name__)


def resolve_lease_seconds(explicit: float | None, defaults: QueueDefaults) -> float:
    """Explicit argument, then the per-queue default, then the global lease setting."""
    if explicit is not None:
        return float(explicit)
    if defaults.lease_seconds is not None:
        return float(defaults.lease_seconds)
    return float(QUEUE_SETTINGS.get("lease_seconds", 300))  # type: ignore[arg-type]


def default_retention() -> tuple[RetentionPolicy, RetentionPolicy]:
    completed = RETENTION_POLICY.get("completed", {})
    failed = RETENTION_POLICY.get("failed", {})
    return (
        RetentionPolicy(count=completed.get("count"), age_seconds=completed.get("age_seconds")),
        RetentionPolicy(count=failed.get("count"), age_seconds=failed.get("age_seconds")),
    )


class TaskQueue:
    def __init__(
        self,
        name: str,
        *,
        defaults: QueueDefaults | None = None,
        lease_seconds: float | None = None,
        retention: tuple[RetentionPolicy, RetentionPolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.defaults = defaults or QueueDefaults()
        self.lease_seconds = resolve_lease_seconds(lease_seconds, self.defaults)
        self._completed_retention, self._failed_retention = retention or default_retention()
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 5000))  # type: ignore[arg-type]
        self._clock = clock
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._records: dict[str, JobRecord] = {}
        self._active_keys: dict[str, str] = {}  # idempotency_key -> job_id (non-terminal only)
        self._ready_heap: list[tuple[int, int, str]] = []
        self._scheduled_heap: list[tuple[float, int, int, str]] = []
        self._completed_ids: deque[str] = deque()
        self._failed_ids: deque[str] = deque()
        self._seq_counter = 0
        self._shutdown = False

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _schedule(self, record: JobRecord) -> None:
        now_ts = self._clock()
        seq = self._next_seq()
        if record.ready_at <= now_ts:
            record.state = JobState.WAITING
            heapq.heappush(self._ready_heap, (record.priority, seq, record.job_id))
        else:
            record.state = JobState.DELAYED
            heapq.heappush(self._scheduled_heap, (record.ready_at, record.priority, seq, record.job_id))
        self._cv.notify()

    def _promote_scheduled(self) -> None:
        now_ts = self._clock()
        while self._scheduled_heap and self._scheduled_heap[0][0] <= now_ts:
            _, priority_value, seq, job_id = heapq.heappop(self._scheduled_heap)
            record = self._records.get(job_id)
            if record is None or record.state != JobState.DELAYED:
                continue
            record.state = JobState.WAITING
            heapq.heappush(self._ready_heap, (priority_value, seq, job_id))

    def _reclaim_expired_leases(self) -> None:
        now_ts = self._clock()
        for record in list(self._records.values()):
            if record.state != JobState.ACTIVE or record.lease_expires_at is None:
                continue
            if record.lease_expires_at > now_ts:
                continue
            logger.warning(
                "Lease expired, redelivering job",
                queue=self.name,
                job_id=record.job_id,
                attempts_made=record.attempts_made,
            )
            record.lease_token = None
            record.lease_expires_at = None
            if record.attempts_made >= record.max_attempts:
                self._finish_failed(record, "lease expired after final attempt")
                continue
            record.ready_at = now_ts
            self._schedule(record)

    def _next_wakeup(self) -> Optional[float]:
        candidates = []
        if self._scheduled_heap:
            candidates.append(self._scheduled_heap[0][0])
        for record in self._records.values():
            if record.state == JobState.ACTIVE and record.lease_expires_at is not None:
                candidates.append(record.lease_expires_at)
        return min(candidates) if candidates else None

    def _await_next_ready(self, timeout: Optional[float]) -> None:
        if self._ready_heap:
            return
        next_ts = self._next_wakeup()
        if next_ts is None:
            self._cv.wait(timeout=timeout)
            return
        wait_time = max(0.0, next_ts - self._clock())
        if timeout is not None:
            wait_time = min(wait_time, timeout)
        if wait_time > 0:
            self._cv.wait(timeout=wait_time)

    def _release_key(self, record: JobRecord) -> None:
        if self._active_keys.get(record.idempotency_key) == record.job_id:
            del self._active_keys[record.idempotency_key]

    def _finish_failed(self, record: JobRecord, error: str) -> None:
        record.state = JobState.FAILED
        record.last_error = error
        record.finished_at = self._clock()
        self._release_key(record)
        self._failed_ids.append(record.job_id)
        self._apply_retention(self._failed_ids, self._failed_retention)
        logger.error(
            "Job failed permanently",
            queue=self.name,
            job_id=record.job_id,
            idempotency_key=record.idempotency_key,
            attempts_made=record.attempts_made,
            error=error,
        )

    def _apply_retention(self, ids: deque[str], policy: RetentionPolicy) -> None:
        if policy.age_seconds is not None:
            cutoff = self._clock() - policy.age_seconds
            while ids:
                record = self._records.get(ids[0])
                if record is not None and (record.finished_at or 0) >= cutoff:
                    break
                self._records.pop(ids.popleft(), None)
        if policy.count is not None:
            while len(ids) > policy.count:
                self._records.pop(ids.popleft(), None)

    def _checked_active(self, job_id: str, lease_token: Optional[str]) -> Optional[JobRecord]:
        record = self._records.get(job_id)
        if record is None:
            raise KeyError(job_id)
        if record.state != JobState.ACTIVE or (lease_token is not None and record.lease_token != lease_token):
            logger.warning(
                "Ignoring acknowledgement for job no longer leased by caller",
                queue=self.name,
                job_id=job_id,
                state=record.state.value,
            )
            return None
        return record

    # ----------------------------- public API ----------------------------- #
    def enqueue(self, payload: JobPayload, idempotency_key: str | None = None, options: JobOptions | None = None) -> EnqueueResult:
        opts = options or JobOptions()
        key = idempotency_key or payload.idempotency_key()
        with self._lock:
            if self._shutdown:
                raise QueueShutdownError(f"Queue '{self.name}' is shut down")
            existing_id = self._active_keys.get(key)
            if existing_id is not None:
                logger.debug("Duplicate enqueue ignored", queue=self.name, idempotency_key=key, job_id=existing_id)
                return EnqueueResult(record=replace(self._records[existing_id]), created=False)
            if self.depth() >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            now_ts = self._clock()
            record = JobRecord(
                job_id=uuid.uuid4().hex,
                queue=self.name,
                idempotency_key=key,
                payload=payload,
                priority=resolve_priority(opts.priority, self.defaults.priority),
                max_attempts=int(opts.max_attempts if opts.max_attempts is not None else self.defaults.max_attempts),
                backoff=opts.backoff or self.defaults.backoff,
                state=JobState.WAITING,
                created_at=now_ts,
                ready_at=now_ts + max(0.0, opts.delay_seconds),
            )
            self._records[record.job_id] = record
            self._active_keys[key] = record.job_id
            self._schedule(record)
            if self.depth() >= self._warn_depth:
                logger.warning("Queue depth warning", queue=self.name, depth=self.depth())
            return EnqueueResult(record=replace(record), created=True)

    def reserve(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[JobRecord]:
        """Lease the next ready job. Returns None if non-blocking and empty, on timeout or after shutdown."""
        end_time = None if timeout is None else time.time() + timeout
        with self._lock:
            while True:
                if self._shutdown:
                    return None
                self._reclaim_expired_leases()
                self._promote_scheduled()
                while self._ready_heap:
                    _, _, job_id = heapq.heappop(self._ready_heap)
                    record = self._records.get(job_id)
                    if record is None or record.state != JobState.WAITING:
                        continue
                    now_ts = self._clock()
                    record.state = JobState.ACTIVE
                    record.attempts_made += 1
                    record.started_at = now_ts
                    record.lease_expires_at = now_ts + self.lease_seconds
                    record.lease_token = uuid.uuid4().hex
                    return replace(record)
                if not block:
                    return None
                remaining = None if end_time is None else max(0.0, end_time - time.time())
                if end_time is not None and remaining == 0:
                    return None
                self._await_next_ready(remaining)

    def complete(self, job_id: str, result: JobResult, *, lease_token: Optional[str] = None) -> Optional[JobRecord]:
        with self._lock:
            record = self._checked_active(job_id, lease_token)
            if record is None:
                return None
            record.state = JobState.COMPLETED
            record.result = result
            record.finished_at = self._clock()
            record.lease_expires_at = None
            record.lease_token = None
            self._release_key(record)
            self._completed_ids.append(job_id)
            self._apply_retention(self._completed_ids, self._completed_retention)
            return replace(record)

    def extend_lease(self, job_id: str, lease_token: str) -> bool:
        """Push the lease deadline of a running job forward; False once the caller no longer holds it."""
        with self._lock:
            record = self._records.get(job_id)
            if record is None or record.state != JobState.ACTIVE or record.lease_token != lease_token:
                return False
            record.lease_expires_at = self._clock() + self.lease_seconds
            return True

    def fail(self, job_id: str, error: BaseException | str, *, retryable: bool = True, lease_token: Optional[str] = None) -> Optional[JobRecord]:
        """Record a failed attempt: reschedule with backoff while attempts remain, else FAILED."""
        with self._lock:
            record = self._checked_active(job_id, lease_token)
            if record is None:
                return None
            message = error_message(error)
            record.last_error = message
            record.lease_expires_at = None
            record.lease_token = None
            if not retryable or record.attempts_made >= record.max_attempts:
                self._finish_failed(record, message)
                return replace(record)
            delay = record.backoff.delay_for(record.attempts_made)
            record.ready_at = self._clock() + delay
            self._schedule(record)
            logger.info(
                "Job scheduled for retry",
                queue=self.name,
                job_id=job_id,
                attempts_made=record.attempts_made,
                max_attempts=record.max_attempts,
                delay_seconds=delay,
                error=message,
            )
            return replace(record)

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            record = self._records.get(job_id)
            return replace(record) if record else None

    def find_active(self, idempotency_key: str) -> Optional[JobRecord]:
        with self._lock:
            job_id = self._active_keys.get(idempotency_key)
            return replace(self._records[job_id]) if job_id else None

    def records(self, state: JobState | None = None) -> list[JobRecord]:
        with self._lock:
            return [replace(r) for r in self._records.values() if state is None or r.state == state]

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._cv.notify_all()

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Drop every record (queued, active and retained). Test isolation only."""
        with self._lock:
            self._records.clear()
            self._active_keys.clear()
            self._ready_heap.clear()
            self._scheduled_heap.clear()
            self._completed_ids.clear()
            self._failed_ids.clear()
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        """Jobs waiting to run (ready + delayed)."""
        with self._lock:
            return sum(1 for r in self._records.values() if r.state in (JobState.WAITING, JobState.DELAYED))

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            counts = {state.value.lower(): 0 for state in JobState}
            for record in self._records.values():
                counts[record.state.value.lower()] += 1
            return {
                "queue": self.name,
                "backend": "memory",
                "depth": counts["waiting"] + counts["delayed"],
                **counts,
                "shutdown": self._shutdown,
            }


__all__ = ["TaskQueue", "default_retention", "resolve_lease_seconds"]
