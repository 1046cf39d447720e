import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from gifter_jobs.jobs.scheduler import (
    Daily,
    Every,
    RecurringTask,
    Scheduler,
    build_scheduler,
    enqueue_daily_collections,
    parse_cadence,
    poll_due_reminders,
)
from gifter_jobs.models.db import Notification, NotificationSchedule, NotificationStatus
from gifter_jobs.utils.time import utc_now

START = datetime(2025, 12, 1, 5, 30, tzinfo=timezone.utc)


class MovableClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_parse_cadence_and_next_run():
    daily = parse_cadence("daily@06:00")
    assert daily == Daily(6, 0)
    assert daily.describe() == "daily@06:00"
    assert daily.next_after(START) == START.replace(hour=6, minute=0)
    assert daily.next_after(START.replace(hour=7)) == datetime(2025, 12, 2, 6, 0, tzinfo=timezone.utc)

    every = parse_cadence("every:60")
    assert every == Every(60.0)
    assert every.describe() == "every:60"
    assert every.next_after(START) == START + timedelta(seconds=60)

    for bad in ("hourly", "daily@25:00", "every:0", ""):
        with pytest.raises(ValueError):
            parse_cadence(bad)


def _scheduler_with(clock, calls, *, fail: bool = False) -> Scheduler:
    scheduler = Scheduler(clock=clock)

    def callback():
        calls.append(clock())
        if fail:
            raise RuntimeError("database unavailable")

    scheduler.add(RecurringTask(name="tick", cadence=Every(60), callback=callback))
    return scheduler


def test_run_due_fires_on_cadence():
    clock = MovableClock()
    calls = []
    scheduler = _scheduler_with(clock, calls)
    scheduler.task("tick").next_run_at = START + timedelta(seconds=60)

    assert scheduler.run_due(START + timedelta(seconds=30)) == []
    assert scheduler.run_due(START + timedelta(seconds=60)) == ["tick"]
    task = scheduler.task("tick")
    assert task.runs == 1
    assert task.next_run_at == START + timedelta(seconds=120)
    status = scheduler.status()[0]
    assert status["cadence"] == "every:60"
    assert status["last_run_at"] == (START + timedelta(seconds=60)).isoformat()


def test_failing_task_is_recorded_and_rescheduled():
    clock = MovableClock()
    calls = []
    scheduler = _scheduler_with(clock, calls, fail=True)
    scheduler.task("tick").next_run_at = START

    scheduler.run_due(START)
    task = scheduler.task("tick")
    assert task.last_error == "database unavailable"
    assert task.next_run_at == START + timedelta(seconds=60)
    assert scheduler.run_due(START + timedelta(seconds=60)) == ["tick"]
    assert task.runs == 2


def test_pause_and_resume():
    clock = MovableClock()
    calls = []
    scheduler = _scheduler_with(clock, calls)
    scheduler.task("tick").next_run_at = START

    scheduler.pause("tick")
    assert scheduler.run_due(START + timedelta(hours=1)) == []
    scheduler.resume("tick")
    assert scheduler.run_due(START + timedelta(hours=1)) == ["tick"]
    with pytest.raises(KeyError):
        scheduler.pause("missing")


def test_duplicate_task_rejected():
    scheduler = Scheduler()
    scheduler.add(RecurringTask(name="tick", cadence=Every(1), callback=lambda: None))
    with pytest.raises(ValueError):
        scheduler.add(RecurringTask(name="tick", cadence=Every(5), callback=lambda: None))


def test_start_runs_on_start_tasks_and_stop():
    fired = threading.Event()
    scheduler = Scheduler(tick_seconds=0.05)
    scheduler.add(RecurringTask(name="boot", cadence=Every(3600), callback=fired.set, run_on_start=True))
    scheduler.start()
    try:
        assert fired.wait(2.0) is True
        assert scheduler.is_running() is True
    finally:
        scheduler.stop(timeout=2.0)
    assert scheduler.is_running() is False
    assert scheduler.task("boot").runs == 1


def test_daily_collections_enqueue_is_idempotent(job_system):
    assert enqueue_daily_collections(job_system) == 3
    assert enqueue_daily_collections(job_system) == 0
    queue = job_system.queue("curated-collections")
    today = utc_now().date().isoformat()
    record = queue.find_active(f"curated-collections-home-{today}")
    assert record is not None
    assert record.payload.triggered_by == "scheduled"
    assert queue.depth() == 3


def test_build_scheduler_registers_default_tasks(job_system):
    scheduler = build_scheduler(job_system, clock=MovableClock())
    names = [entry["name"] for entry in scheduler.status()]
    assert names == ["daily-collections", "collection-cleanup", "reminder-poll"]
    assert scheduler.task("daily-collections").run_on_start is True
    assert scheduler.task("reminder-poll").cadence == Every(60.0)


def test_poll_due_reminders_enqueues_only_due_queued(job_system, schedule_factory):
    due = schedule_factory(minutes_ago=5)
    schedule_factory(minutes_ago=-30)
    schedule_factory(minutes_ago=5, status=NotificationStatus.SENT)

    assert poll_due_reminders(job_system) == 1
    record = job_system.queue("reminder-dispatch").find_active(f"reminder-dispatch-{due.id}")
    assert record is not None
    # Still pending: a second poll is a no-op
    assert poll_due_reminders(job_system) == 0


def test_concurrent_polls_dispatch_once(job_system, db_session, schedule_factory):
    schedule = schedule_factory(minutes_ago=1)
    results: list[int] = []
    barrier = threading.Barrier(2)

    def poll():
        barrier.wait()
        results.append(poll_due_reminders(job_system))

    threads = [threading.Thread(target=poll) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5.0)

    assert sorted(results) == [0, 1]
    assert len(job_system.run_pending("reminder-dispatch")) == 1
    job_system.delivery.shutdown(wait=True)

    db_session.expire_all()
    assert db_session.get(NotificationSchedule, schedule.id).status == NotificationStatus.SENT
    assert len(db_session.scalars(select(Notification)).all()) == 1
    assert poll_due_reminders(job_system) == 0
