"""Reminder schedule queries and state transitions."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from gifter_jobs.models.db import Notification, NotificationSchedule, NotificationStatus


def due_schedules(session: Session, now: datetime, *, limit: int = 100) -> list[NotificationSchedule]:
    """QUEUED schedules whose ``scheduled_for`` has passed, oldest first."""
    stmt = (
        select(NotificationSchedule)
        .where(NotificationSchedule.status == NotificationStatus.QUEUED)
        .where(NotificationSchedule.scheduled_for <= now)
        .order_by(NotificationSchedule.scheduled_for.asc())
        .limit(limit)
    )
    return list(session.scalars(stmt))


def get_schedule(session: Session, schedule_id: str) -> Optional[NotificationSchedule]:
    return session.get(NotificationSchedule, schedule_id)


def record_sent(session: Session, schedule: NotificationSchedule, *, title: str, body: str, data: Optional[dict] = None) -> Notification:
    """Create the Notification row and flip the schedule to SENT (same transaction)."""
    notification = Notification(
        user_id=schedule.user_id,
        schedule_id=schedule.id,
        channel=schedule.channel,
        title=title,
        body=body,
        data=data,
    )
    session.add(notification)
    schedule.status = NotificationStatus.SENT
    schedule.last_error = None
    session.flush()
    return notification


def record_failure(session: Session, schedule_id: str, error: str) -> None:
    schedule = session.get(NotificationSchedule, schedule_id)
    if schedule is None:
        return
    schedule.status = NotificationStatus.FAILED
    schedule.last_error = error
    schedule.attempts = (schedule.attempts or 0) + 1
    session.flush()


__all__ = ["due_schedules", "get_schedule", "record_sent", "record_failure"]
