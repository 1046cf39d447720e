"""Recurring task scheduler.

One timer thread runs due tasks one after another. A task is a name, a
cadence and a callback; cadences are ``Daily(hour, minute)`` in UTC or
``Every(seconds)``, parsed from config strings such as ``"daily@06:00"`` and
``"every:60"``. A failing callback is logged and the task is rescheduled as
usual. Tasks can be paused and resumed independently.

The default tasks only enqueue work (or run the cleanup sweep); overlapping
or repeated firings are absorbed by idempotent enqueue.
"""
from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from gifter_jobs.config import SCHEDULER_SETTINGS
from gifter_jobs.jobs.enqueue import enqueue_curated_collections, enqueue_reminder_dispatch
from gifter_jobs.repositories.reminders import due_schedules
from gifter_jobs.utils import get_logger, log_performance
from gifter_jobs.utils.time import utc_now

if TYPE_CHECKING:  # pragma: no cover
    from gifter_jobs.jobs.system import JobSystem

logger = get_logger(__name__)

_DAILY_RE = re.compile(r"^daily@(\d{1,2}):(\d{2})$")
_EVERY_RE = re.compile(r"^every:(\d+(?:\.\d+)?)$")


@dataclass(slots=True, frozen=True)
class Daily:
    hour: int
    minute: int = 0

    def __post_init__(self) -> None:
        if not (0 <= self.hour < 24 and 0 <= self.minute < 60):
            raise ValueError(f"Invalid daily time {self.hour:02d}:{self.minute:02d}")

    def next_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def describe(self) -> str:
        return f"daily@{self.hour:02d}:{self.minute:02d}"


@dataclass(slots=True, frozen=True)
class Every:
    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("Interval must be positive")

    def next_after(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.seconds)

    def describe(self) -> str:
        seconds = int(self.seconds) if float(self.seconds).is_integer() else self.seconds
        return f"every:{seconds}"


Cadence = Union[Daily, Every]


def parse_cadence(value: str) -> Cadence:
    text = (value or "").strip().lower()
    match = _DAILY_RE.match(text)
    if match:
        return Daily(int(match.group(1)), int(match.group(2)))
    match = _EVERY_RE.match(text)
    if match:
        return Every(float(match.group(1)))
    raise ValueError(f"Unrecognised cadence: {value!r}")


@dataclass(slots=True)
class RecurringTask:
    name: str
    cadence: Cadence
    callback: Callable[[], Any]
    run_on_start: bool = False
    enabled: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0


class Scheduler:
    def __init__(self, *, clock: Callable[[], datetime] = utc_now, tick_seconds: float = 1.0):
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._tasks: dict[str, RecurringTask] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add(self, task: RecurringTask) -> RecurringTask:
        with self._lock:
            if task.name in self._tasks:
                raise ValueError(f"Task already registered: {task.name}")
            self._tasks[task.name] = task
        return task

    def task(self, name: str) -> RecurringTask:
        with self._lock:
            try:
                return self._tasks[name]
            except KeyError:
                raise KeyError(f"Unknown scheduled task: {name}") from None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        now = self._clock()
        with self._lock:
            for task in self._tasks.values():
                task.next_run_at = now if task.run_on_start else task.cadence.next_after(now)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started", tasks=[t.name for t in self._tasks.values()])

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel future firings; jobs already enqueued keep running."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def pause(self, name: str) -> None:
        self.task(name).enabled = False
        logger.info("Scheduled task paused", task=name)

    def resume(self, name: str) -> None:
        task = self.task(name)
        with self._lock:
            task.enabled = True
            if task.next_run_at is None:
                task.next_run_at = task.cadence.next_after(self._clock())
        logger.info("Scheduled task resumed", task=name)

    def status(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": task.name,
                    "cadence": task.cadence.describe(),
                    "enabled": task.enabled,
                    "next_run_at": task.next_run_at.isoformat() if task.next_run_at else None,
                    "last_run_at": task.last_run_at.isoformat() if task.last_run_at else None,
                    "last_error": task.last_error,
                    "runs": task.runs,
                }
                for task in self._tasks.values()
            ]

    def run_due(self, now: Optional[datetime] = None) -> list[str]:
        """Run every enabled task whose next run time has passed; returns the names run."""
        now = now or self._clock()
        with self._lock:
            due = [
                task for task in self._tasks.values()
                if task.enabled and task.next_run_at is not None and task.next_run_at <= now
            ]
        for task in due:
            self._run(task, now)
        return [task.name for task in due]

    def run_task(self, name: str) -> None:
        self._run(self.task(name), self._clock())

    def _run(self, task: RecurringTask, now: datetime) -> None:
        started = time.perf_counter()
        try:
            task.callback()
            task.last_error = None
        except Exception as e:
            task.last_error = str(e)
            logger.error("Scheduled task failed", task=task.name, error=str(e), exc_info=True)
        finally:
            with self._lock:
                task.runs += 1
                task.last_run_at = now
                task.next_run_at = task.cadence.next_after(now)
            log_performance(f"scheduler:{task.name}", (time.perf_counter() - started) * 1000)

    def _seconds_until_next(self) -> float:
        now = self._clock()
        with self._lock:
            upcoming = [t.next_run_at for t in self._tasks.values() if t.enabled and t.next_run_at is not None]
        if not upcoming:
            return self._tick_seconds
        return max(0.0, min(self._tick_seconds, (min(upcoming) - now).total_seconds()))

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_due()
            self._stop_event.wait(self._seconds_until_next())


def enqueue_daily_collections(system: "JobSystem", surfaces: Optional[list[str]] = None) -> int:
    """One collection-generation job per surface for today; returns how many were new."""
    today = utc_now().date()
    created = 0
    for surface in surfaces or list(SCHEDULER_SETTINGS["surfaces"]):  # type: ignore[call-overload]
        result = enqueue_curated_collections(system, surface, today, triggered_by="scheduled")
        created += int(result.created)
    logger.info("Daily collection jobs enqueued", target_date=today.isoformat(), created=created)
    return created


def poll_due_reminders(system: "JobSystem", *, now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
    """Enqueue a dispatch job per due QUEUED schedule; returns how many were new.

    Safe to run concurrently with itself: the dispatch key is the schedule id.
    """
    now = now or utc_now()
    limit = int(limit or SCHEDULER_SETTINGS.get("reminder_batch_size", 100))  # type: ignore[arg-type]
    session = system.session_factory()
    try:
        schedules = due_schedules(session, now, limit=limit)
        created = 0
        for schedule in schedules:
            result = enqueue_reminder_dispatch(system, schedule)
            created += int(result.created)
    finally:
        session.close()
    if schedules:
        logger.info("Due reminders enqueued", due=len(schedules), created=created)
    return created


def build_scheduler(system: "JobSystem", *, clock: Callable[[], datetime] = utc_now) -> Scheduler:
    scheduler = Scheduler(clock=clock)
    scheduler.add(
        RecurringTask(
            name="daily-collections",
            cadence=parse_cadence(str(SCHEDULER_SETTINGS["daily_collections_cadence"])),
            callback=lambda: enqueue_daily_collections(system),
            run_on_start=True,
        )
    )
    scheduler.add(
        RecurringTask(
            name="collection-cleanup",
            cadence=parse_cadence(str(SCHEDULER_SETTINGS["collection_cleanup_cadence"])),
            callback=system.curator.cleanup_expired,
        )
    )
    scheduler.add(
        RecurringTask(
            name="reminder-poll",
            cadence=parse_cadence(str(SCHEDULER_SETTINGS["reminder_poll_cadence"])),
            callback=lambda: poll_due_reminders(system),
        )
    )
    return scheduler


__all__ = [
    "Daily",
    "Every",
    "Cadence",
    "parse_cadence",
    "RecurringTask",
    "Scheduler",
    "enqueue_daily_collections",
    "poll_due_reminders",
    "build_scheduler",
]
