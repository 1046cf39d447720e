"""Redis-backed task queue with the same contract as :class:`TaskQueue`.

Features:
- Idempotent enqueue via a ``SET NX`` key per idempotency key.
- Priority ordering (lower numeric priority value = higher priority).
- Optional delay (scheduled execution time) per job; retries use the same path.
- Leases: reserved jobs sit in an ``active`` sorted set scored by lease deadline and
  are redelivered once the deadline passes.
- Persistence across application restarts.
- Fallback to the in-memory queue if Redis is unavailable.

Data structures in Redis (``{prefix}:{queue}:...``):
 1. Hash ``records``: job_id -> serialized JobRecord
 2. Sorted Set ``ready``: score = priority * 1e13 + seq, members = job ids
 3. Sorted Set ``delayed``: score = ready_at_ts
 4. Sorted Set ``active``: score = lease deadline
 5. Sorted Sets ``completed`` / ``failed``: score = finished_at (retention)
 6. String ``key:{idempotency_key}``: job id of the non-terminal record holding the key
 7. String ``seq``: INCR counter for FIFO tie-breaks

Moving a member between sets claims it through ``ZREM``: only the caller whose
``ZREM`` removed the member proceeds, so concurrent promoters do not duplicate work.

Reserving pops from ``ready`` and adds to ``active`` in one Lua script, so a job
is never outside every set. A process that dies after the claim but before
saving the ACTIVE record leaves a WAITING record in ``active``; lease
reclamation puts it back on ``ready``. Idempotency keys are replaced and
released with compare-and-set scripts.
"""
from __future__ import annotations

import json
import threading
import time
import uuid
from typing import Any, Callable, Optional
import redis

from gifter_jobs.config import QUEUE_SETTINGS
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
from gifter_jobs.jobs.queue import TaskQueue, default_retention, resolve_lease_seconds
from gifter_jobs.utils import get_logger
from gifter_jobs.utils.priority import resolve_priority

logger = get_logger(__name__)

_PRIORITY_SCALE = 10 ** 13
_POLL_INTERVAL_SECONDS = 0.5

# KEYS: ready, active. ARGV: lease deadline. Returns the claimed job id or nil.
CLAIM_READY_LUA = """
local popped = redis.call('ZPOPMIN', KEYS[1], 1)
if #popped == 0 then
    return false
end
redis.call('ZADD', KEYS[2], ARGV[1], popped[1])
return popped[1]
"""

# KEYS: idempotency key. ARGV: expected job id ('' when absent), new job id. Returns 1 when swapped.
SWAP_KEY_LUA = """
local current = redis.call('GET', KEYS[1])
if (current == false and ARGV[1] == '') or current == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2])
    return 1
end
return 0
"""

# KEYS: idempotency key. ARGV: job id. Deletes the key only while that job holds it.
RELEASE_KEY_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def _decode(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisTaskQueue:
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
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        prefix = str(QUEUE_SETTINGS.get("redis_prefix", "gifter:jobs"))
        self._base = f"{prefix}:{name}"
        self._records_key = f"{self._base}:records"
        self._ready_key = f"{self._base}:ready"
        self._delayed_key = f"{self._base}:delayed"
        self._active_key = f"{self._base}:active"
        self._completed_key = f"{self._base}:completed"
        self._failed_key = f"{self._base}:failed"
        self._seq_key = f"{self._base}:seq"
        self.lease_seconds = resolve_lease_seconds(lease_seconds, self.defaults)
        self._completed_retention, self._failed_retention = retention or default_retention()
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._clock = clock

        # In-memory fallback queue
        self._fallback_queue = TaskQueue(name, defaults=self.defaults, lease_seconds=lease_seconds, retention=retention, clock=clock)

        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._shutdown = False
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        """Initialize Redis client and test connection."""
        try:
            timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
            self._redis_client = redis.from_url(self._redis_url, socket_connect_timeout=timeout)
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url, queue=self.name)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", queue=self.name, error=str(e))

    def health_check(self) -> bool:
        """Check if Redis is available and update status accordingly."""
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active
        try:
            self._redis_client.ping()
            if not self._is_redis_active:
                logger.info("Redis connection restored", queue=self.name)
            self._is_redis_active = True
            return True
        except (redis.RedisError, ConnectionError, AttributeError) as e:
            if self._is_redis_active:
                logger.warning("Redis connection lost, using in-memory fallback queue", queue=self.name, error=str(e))
            self._is_redis_active = False
            return False

    @property
    def redis_active(self) -> bool:
        return self._is_redis_active and self._redis_client is not None

    def _mark_down(self, operation: str, error: Exception) -> None:
        logger.error("Redis error, falling back to in-memory queue", queue=self.name, operation=operation, error=str(error))
        self._is_redis_active = False

    # ----------------------------- record helpers ----------------------------- #
    def _load(self, job_id: str) -> Optional[JobRecord]:
        raw = _decode(self._redis_client.hget(self._records_key, job_id))  # type: ignore[union-attr]
        if raw is None:
            return None
        return JobRecord.from_dict(json.loads(raw))

    def _save(self, record: JobRecord) -> None:
        self._redis_client.hset(self._records_key, record.job_id, json.dumps(record.to_dict()))  # type: ignore[union-attr]

    def _idem_key(self, idempotency_key: str) -> str:
        return f"{self._base}:key:{idempotency_key}"

    def _place(self, record: JobRecord) -> None:
        client = self._redis_client
        now_ts = self._clock()
        if record.ready_at <= now_ts:
            record.state = JobState.WAITING
            seq = int(client.incr(self._seq_key))  # type: ignore[union-attr]
            self._save(record)
            client.zadd(self._ready_key, {record.job_id: record.priority * _PRIORITY_SCALE + seq})  # type: ignore[union-attr]
        else:
            record.state = JobState.DELAYED
            self._save(record)
            client.zadd(self._delayed_key, {record.job_id: record.ready_at})  # type: ignore[union-attr]

    def _release_key(self, record: JobRecord) -> None:
        self._redis_client.eval(RELEASE_KEY_LUA, 1, self._idem_key(record.idempotency_key), record.job_id)  # type: ignore[union-attr]

    def _finish(self, record: JobRecord, state: JobState) -> None:
        client = self._redis_client
        record.state = state
        record.finished_at = self._clock()
        record.lease_expires_at = None
        record.lease_token = None
        self._save(record)
        client.zrem(self._active_key, record.job_id)  # type: ignore[union-attr]
        self._release_key(record)
        if state == JobState.COMPLETED:
            client.zadd(self._completed_key, {record.job_id: record.finished_at})  # type: ignore[union-attr]
            self._apply_retention(self._completed_key, self._completed_retention)
        else:
            client.zadd(self._failed_key, {record.job_id: record.finished_at})  # type: ignore[union-attr]
            self._apply_retention(self._failed_key, self._failed_retention)

    def _apply_retention(self, zkey: str, policy: RetentionPolicy) -> None:
        client = self._redis_client
        expired: list[str] = []
        if policy.age_seconds is not None:
            cutoff = self._clock() - policy.age_seconds
            expired.extend(_decode(m) for m in client.zrangebyscore(zkey, 0, cutoff))  # type: ignore[union-attr, misc]
        if policy.count is not None:
            overflow = int(client.zcard(zkey)) - policy.count  # type: ignore[union-attr]
            if overflow > 0:
                expired.extend(_decode(m) for m in client.zrange(zkey, 0, overflow - 1))  # type: ignore[union-attr, misc]
        for job_id in dict.fromkeys(expired):
            client.zrem(zkey, job_id)  # type: ignore[union-attr]
            client.hdel(self._records_key, job_id)  # type: ignore[union-attr]

    def _promote_scheduled(self) -> None:
        client = self._redis_client
        now_ts = self._clock()
        for member in client.zrangebyscore(self._delayed_key, 0, now_ts):  # type: ignore[union-attr]
            job_id = _decode(member)
            if not client.zrem(self._delayed_key, job_id):  # type: ignore[union-attr]
                continue  # another process promoted it
            record = self._load(job_id)  # type: ignore[arg-type]
            if record is None or record.state != JobState.DELAYED:
                continue
            record.ready_at = now_ts
            self._place(record)

    def _reclaim_expired_leases(self) -> None:
        client = self._redis_client
        now_ts = self._clock()
        for member in client.zrangebyscore(self._active_key, 0, now_ts):  # type: ignore[union-attr]
            job_id = _decode(member)
            if not client.zrem(self._active_key, job_id):  # type: ignore[union-attr]
                continue
            record = self._load(job_id)  # type: ignore[arg-type]
            if record is None or record.state.is_terminal:
                continue
            if record.state == JobState.WAITING:
                # Claimed by a reserve that never wrote the lease; no attempt was made.
                logger.warning("Recovering job claimed without a lease", queue=self.name, job_id=job_id)
                record.ready_at = now_ts
                self._place(record)
                continue
            if record.state != JobState.ACTIVE:
                continue
            logger.warning("Lease expired, redelivering job", queue=self.name, job_id=job_id, attempts_made=record.attempts_made)
            if record.attempts_made >= record.max_attempts:
                record.last_error = "lease expired after final attempt"
                self._finish(record, JobState.FAILED)
                continue
            record.lease_expires_at = None
            record.lease_token = None
            record.ready_at = now_ts
            self._place(record)

    def _claim_ready(self, lease_deadline: float) -> Optional[str]:
        """Move the highest-priority ready job into ``active`` atomically."""
        claimed = self._redis_client.eval(CLAIM_READY_LUA, 2, self._ready_key, self._active_key, lease_deadline)  # type: ignore[union-attr]
        return _decode(claimed) if claimed else None

    def _acquire_key(self, idempotency_key: str, job_id: str) -> Optional[JobRecord]:
        """Take the idempotency key for ``job_id``; returns the in-flight holder instead when there is one."""
        idem_key = self._idem_key(idempotency_key)
        client = self._redis_client
        while True:
            if client.set(idem_key, job_id, nx=True):  # type: ignore[union-attr]
                return None
            holder = _decode(client.get(idem_key))  # type: ignore[union-attr]
            existing = self._load(holder) if holder else None
            if existing is not None and not existing.state.is_terminal:
                return existing
            # Stale key left behind by a finished or pruned record; swap only if nobody else did.
            if client.eval(SWAP_KEY_LUA, 1, idem_key, holder or "", job_id):  # type: ignore[union-attr]
                return None

    def _active_record(self, job_id: str, lease_token: Optional[str]) -> Optional[JobRecord]:
        record = self._load(job_id)
        if record is None:
            raise KeyError(job_id)
        if record.state != JobState.ACTIVE or (lease_token is not None and record.lease_token != lease_token):
            logger.warning("Ignoring acknowledgement for job no longer leased by caller", queue=self.name, job_id=job_id, state=record.state.value)
            return None
        return record

    # ----------------------------- public API ----------------------------- #
    def enqueue(self, payload: JobPayload, idempotency_key: str | None = None, options: JobOptions | None = None) -> EnqueueResult:
        if self._shutdown:
            raise QueueShutdownError(f"Queue '{self.name}' is shut down")
        if not self.redis_active:
            return self._fallback_queue.enqueue(payload, idempotency_key, options)
        opts = options or JobOptions()
        key = idempotency_key or payload.idempotency_key()
        with self._lock:
            try:
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
                # Saved before taking the key so a holder id always resolves to a record.
                self._save(record)
                existing = self._acquire_key(key, record.job_id)
                if existing is not None:
                    self._redis_client.hdel(self._records_key, record.job_id)  # type: ignore[union-attr]
                    logger.debug("Duplicate enqueue ignored", queue=self.name, idempotency_key=key, job_id=existing.job_id)
                    return EnqueueResult(record=existing, created=False)
                self._place(record)
                depth = self.depth()
                if depth >= self._warn_depth:
                    logger.warning("Queue depth warning", queue=self.name, depth=depth)
                return EnqueueResult(record=record, created=True)
            except redis.RedisError as e:
                self._mark_down("enqueue", e)
                return self._fallback_queue.enqueue(payload, idempotency_key, options)

    def reserve(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[JobRecord]:
        """Lease the next ready job, honouring priority across the ready set.

        Blocking reserves poll the ready set every ``_POLL_INTERVAL_SECONDS``;
        the claim script cannot use blocking pops.
        """
        end_time = None if timeout is None else time.time() + timeout
        while True:
            if self._shutdown:
                return None
            if not self.redis_active and not self.health_check():
                remaining = None if end_time is None else max(0.0, end_time - time.time())
                return self._fallback_queue.reserve(block=block, timeout=remaining)
            try:
                with self._lock:
                    self._reclaim_expired_leases()
                    self._promote_scheduled()
                    now_ts = self._clock()
                    job_id = self._claim_ready(now_ts + self.lease_seconds)
                    if job_id is not None:
                        record = self._load(job_id)
                        if record is None or record.state != JobState.WAITING:
                            self._redis_client.zrem(self._active_key, job_id)  # type: ignore[union-attr]
                            continue
                        record.state = JobState.ACTIVE
                        record.attempts_made += 1
                        record.started_at = now_ts
                        record.lease_expires_at = now_ts + self.lease_seconds
                        record.lease_token = uuid.uuid4().hex
                        self._save(record)
                        return record
            except redis.RedisError as e:
                self._mark_down("reserve", e)
                continue
            if not block:
                return None
            remaining = None if end_time is None else max(0.0, end_time - time.time())
            if remaining == 0:
                return None
            time.sleep(_POLL_INTERVAL_SECONDS if remaining is None else min(remaining, _POLL_INTERVAL_SECONDS))

    def complete(self, job_id: str, result: JobResult, *, lease_token: Optional[str] = None) -> Optional[JobRecord]:
        if not self.redis_active:
            return self._fallback_queue.complete(job_id, result, lease_token=lease_token)
        with self._lock:
            try:
                record = self._active_record(job_id, lease_token)
            except KeyError:
                return self._fallback_queue.complete(job_id, result, lease_token=lease_token)
            if record is None:
                return None
            record.result = result
            self._finish(record, JobState.COMPLETED)
            return record

    def extend_lease(self, job_id: str, lease_token: str) -> bool:
        """Push the lease deadline of a running job forward; False once the caller no longer holds it."""
        if not self.redis_active:
            return self._fallback_queue.extend_lease(job_id, lease_token)
        with self._lock:
            try:
                record = self._load(job_id)
                if record is None:
                    return self._fallback_queue.extend_lease(job_id, lease_token)
                if record.state != JobState.ACTIVE or record.lease_token != lease_token:
                    return False
                if self._redis_client.zscore(self._active_key, job_id) is None:  # type: ignore[union-attr]
                    return False  # already reclaimed by another process
                deadline = self._clock() + self.lease_seconds
                self._redis_client.zadd(self._active_key, {job_id: deadline}, xx=True)  # type: ignore[union-attr]
                record.lease_expires_at = deadline
                self._save(record)
                return True
            except redis.RedisError as e:
                self._mark_down("extend_lease", e)
                return False

    def fail(self, job_id: str, error: BaseException | str, *, retryable: bool = True, lease_token: Optional[str] = None) -> Optional[JobRecord]:
        if not self.redis_active:
            return self._fallback_queue.fail(job_id, error, retryable=retryable, lease_token=lease_token)
        with self._lock:
            try:
                record = self._active_record(job_id, lease_token)
            except KeyError:
                return self._fallback_queue.fail(job_id, error, retryable=retryable, lease_token=lease_token)
            if record is None:
                return None
            message = error_message(error)
            record.last_error = message
            if not retryable or record.attempts_made >= record.max_attempts:
                self._finish(record, JobState.FAILED)
                logger.error("Job failed permanently", queue=self.name, job_id=job_id, attempts_made=record.attempts_made, error=message)
                return record
            self._redis_client.zrem(self._active_key, job_id)  # type: ignore[union-attr]
            record.lease_expires_at = None
            record.lease_token = None
            delay = record.backoff.delay_for(record.attempts_made)
            record.ready_at = self._clock() + delay
            self._place(record)
            logger.info("Job scheduled for retry", queue=self.name, job_id=job_id, attempts_made=record.attempts_made, delay_seconds=delay, error=message)
            return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        if self.redis_active:
            try:
                record = self._load(job_id)
                if record is not None:
                    return record
            except redis.RedisError as e:
                self._mark_down("get", e)
        return self._fallback_queue.get(job_id)

    def find_active(self, idempotency_key: str) -> Optional[JobRecord]:
        if self.redis_active:
            try:
                job_id = _decode(self._redis_client.get(self._idem_key(idempotency_key)))  # type: ignore[union-attr]
                record = self._load(job_id) if job_id else None
                if record is not None and not record.state.is_terminal:
                    return record
            except redis.RedisError as e:
                self._mark_down("find_active", e)
        return self._fallback_queue.find_active(idempotency_key)

    def records(self, state: JobState | None = None) -> list[JobRecord]:
        found = self._fallback_queue.records(state)
        if self.redis_active:
            try:
                for raw in self._redis_client.hvals(self._records_key):  # type: ignore[union-attr]
                    record = JobRecord.from_dict(json.loads(_decode(raw)))  # type: ignore[arg-type]
                    if state is None or record.state == state:
                        found.append(record)
            except redis.RedisError as e:
                self._mark_down("records", e)
        return found

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all jobs and records (for testing)."""
        with self._lock:
            self._fallback_queue.purge()
            if not self.redis_active:
                return
            try:
                for member in self._redis_client.hkeys(self._records_key):  # type: ignore[union-attr]
                    record = self._load(_decode(member))  # type: ignore[arg-type]
                    if record is not None:
                        self._redis_client.delete(self._idem_key(record.idempotency_key))  # type: ignore[union-attr]
                self._redis_client.delete(  # type: ignore[union-attr]
                    self._records_key, self._ready_key, self._delayed_key, self._active_key,
                    self._completed_key, self._failed_key, self._seq_key,
                )
                logger.info("Redis queue purged", queue=self.name)
            except redis.RedisError as e:
                self._mark_down("purge", e)

    def depth(self) -> int:
        """Jobs waiting to run (ready + delayed)."""
        if not self.redis_active:
            return self._fallback_queue.depth()
        try:
            return int(self._redis_client.zcard(self._ready_key)) + int(self._redis_client.zcard(self._delayed_key))  # type: ignore[union-attr]
        except redis.RedisError as e:
            self._mark_down("depth", e)
            return self._fallback_queue.depth()

    def __len__(self) -> int:
        return self.depth()

    def snapshot(self) -> dict:
        if not self.redis_active:
            snapshot = self._fallback_queue.snapshot()
            snapshot["redis_active"] = False
            return snapshot
        try:
            client = self._redis_client
            waiting = int(client.zcard(self._ready_key))  # type: ignore[union-attr]
            delayed = int(client.zcard(self._delayed_key))  # type: ignore[union-attr]
            return {
                "queue": self.name,
                "backend": "redis",
                "depth": waiting + delayed,
                "waiting": waiting,
                "delayed": delayed,
                "active": int(client.zcard(self._active_key)),  # type: ignore[union-attr]
                "completed": int(client.zcard(self._completed_key)),  # type: ignore[union-attr]
                "failed": int(client.zcard(self._failed_key)),  # type: ignore[union-attr]
                "shutdown": self._shutdown,
                "redis_active": True,
            }
        except redis.RedisError as e:
            self._mark_down("snapshot", e)
            snapshot = self._fallback_queue.snapshot()
            snapshot["redis_active"] = False
            return snapshot


__all__ = ["RedisTaskQueue"]
