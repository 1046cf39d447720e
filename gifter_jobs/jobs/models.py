"""Job record, options and result types shared by every queue backend.

A JobRecord moves through:

    WAITING / DELAYED  --reserve-->  ACTIVE  --complete-->  COMPLETED
                                       |
                                       +--fail (retryable, attempts left)--> DELAYED / WAITING
                                       +--fail (terminal or exhausted)----> FAILED

Timestamps are epoch seconds (``time.time()``) so records serialize cleanly
into Redis.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from gifter_jobs.jobs.payloads import JobPayload, payload_from_dict, payload_to_dict
from gifter_jobs.utils.backoff import delay_for_policy


class JobState(str, enum.Enum):
    WAITING = "WAITING"
    DELAYED = "DELAYED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class NonRetryableJobError(Exception):
    """Raised by a handler when retrying cannot succeed (malformed payload, unknown target)."""


class QueueShutdownError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    type: str = "exponential"  # exponential | fixed
    delay_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return delay_for_policy(self.type, self.delay_seconds, attempt)


@dataclass(slots=True, frozen=True)
class RetentionPolicy:
    count: Optional[int] = None
    age_seconds: Optional[float] = None


@dataclass(slots=True)
class JobOptions:
    """Per-enqueue overrides. ``None`` means the queue default applies."""
    priority: int | str | None = None
    delay_seconds: float = 0.0
    max_attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None


@dataclass(slots=True)
class JobResult:
    success: bool = True
    skipped: bool = False
    skip_reason: Optional[str] = None
    processing_time_ms: int = 0
    output: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skip(cls, reason: str, *, success: bool = True, processing_time_ms: int = 0, **output: Any) -> "JobResult":
        return cls(success=success, skipped=True, skip_reason=reason, processing_time_ms=processing_time_ms, output=output)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "processing_time_ms": self.processing_time_ms,
            "output": dict(self.output),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobResult":
        return cls(
            success=bool(data.get("success", True)),
            skipped=bool(data.get("skipped", False)),
            skip_reason=data.get("skip_reason"),
            processing_time_ms=int(data.get("processing_time_ms", 0)),
            output=dict(data.get("output") or {}),
        )


@dataclass(slots=True)
class JobRecord:
    job_id: str
    queue: str
    idempotency_key: str
    payload: JobPayload
    priority: int
    max_attempts: int
    backoff: BackoffPolicy
    state: JobState
    created_at: float
    ready_at: float
    attempts_made: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    lease_expires_at: Optional[float] = None
    lease_token: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[JobResult] = None

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue": self.queue,
            "idempotency_key": self.idempotency_key,
            "payload": payload_to_dict(self.payload),
            "priority": self.priority,
            "max_attempts": self.max_attempts,
            "backoff": {"type": self.backoff.type, "delay_seconds": self.backoff.delay_seconds},
            "state": self.state.value,
            "created_at": self.created_at,
            "ready_at": self.ready_at,
            "attempts_made": self.attempts_made,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "lease_expires_at": self.lease_expires_at,
            "lease_token": self.lease_token,
            "last_error": self.last_error,
            "result": self.result.to_dict() if self.result else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobRecord":
        backoff = data.get("backoff") or {}
        result = data.get("result")
        return cls(
            job_id=data["job_id"],
            queue=data["queue"],
            idempotency_key=data["idempotency_key"],
            payload=payload_from_dict(data["payload"]),
            priority=int(data["priority"]),
            max_attempts=int(data["max_attempts"]),
            backoff=BackoffPolicy(type=backoff.get("type", "exponential"), delay_seconds=float(backoff.get("delay_seconds", 0))),
            state=JobState(data["state"]),
            created_at=float(data["created_at"]),
            ready_at=float(data["ready_at"]),
            attempts_made=int(data.get("attempts_made", 0)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            lease_expires_at=data.get("lease_expires_at"),
            lease_token=data.get("lease_token"),
            last_error=data.get("last_error"),
            result=JobResult.from_dict(result) if result else None,
        )


@dataclass(slots=True)
class EnqueueResult:
    record: JobRecord
    created: bool


@dataclass(slots=True, frozen=True)
class QueueDefaults:
    priority: int = 3
    max_attempts: int = 3
    backoff: BackoffPolicy = BackoffPolicy()
    lease_seconds: Optional[float] = None

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | None) -> "QueueDefaults":
        if not cfg:
            return cls()
        lease = cfg.get("lease_seconds")
        return cls(
            priority=int(cfg.get("priority", 3)),
            max_attempts=int(cfg.get("max_attempts", 3)),
            backoff=BackoffPolicy(
                type=str(cfg.get("backoff_type", "exponential")),
                delay_seconds=float(cfg.get("backoff_delay", 2.0)),
            ),
            lease_seconds=float(lease) if lease is not None else None,
        )


def error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        text = str(error)
        return f"{type(error).__name__}: {text}" if text else type(error).__name__
    return str(error)


__all__ = [
    "JobState",
    "NonRetryableJobError",
    "QueueShutdownError",
    "BackoffPolicy",
    "RetentionPolicy",
    "JobOptions",
    "JobResult",
    "JobRecord",
    "EnqueueResult",
    "QueueDefaults",
    "error_message",
]
