"""Channel delivery for dispatched reminders.

Recording a notification happens inside the reminder-dispatch job; pushing it
out to a channel (push provider, email) runs on a small background executor so
a slow provider never holds a queue worker. The outcome lands on the
Notification row (``delivered_at`` or ``delivery_error``).
"""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gifter_jobs.config import WORKER_SETTINGS
from gifter_jobs.models.db import Notification, NotificationChannel
from gifter_jobs.utils import get_logger
from gifter_jobs.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class OutboundMessage:
    notification_id: str
    user_id: str
    channel: NotificationChannel
    title: str
    body: str
    data: Optional[dict[str, Any]] = None


class ChannelSender(Protocol):
    def send(self, message: OutboundMessage) -> None: ...


class LoggingSender:
    """Stand-in provider that only logs; real push/email providers plug in here."""

    def send(self, message: OutboundMessage) -> None:
        logger.info(
            "Sending notification",
            notification_id=message.notification_id,
            user_id=message.user_id,
            channel=message.channel.value,
            title=message.title,
        )


class BackgroundDelivery:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        senders: Optional[dict[NotificationChannel, ChannelSender]] = None,
        *,
        max_workers: Optional[int] = None,
    ):
        self._session_factory = session_factory
        default = LoggingSender()
        self._senders: dict[NotificationChannel, ChannelSender] = {
            NotificationChannel.PUSH: default,
            NotificationChannel.EMAIL: default,
            **(senders or {}),
        }
        self._executor = ThreadPoolExecutor(
            max_workers=int(max_workers or WORKER_SETTINGS.get("delivery_threads", 4)),  # type: ignore[arg-type]
            thread_name_prefix="notification-delivery",
        )

    def submit(self, message: OutboundMessage) -> Future:
        sender = self._senders[message.channel]
        future = self._executor.submit(sender.send, message)
        future.add_done_callback(lambda f: self._record(message, f))
        return future

    def _record(self, message: OutboundMessage, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(
                "Notification delivery failed",
                notification_id=message.notification_id,
                channel=message.channel.value,
                error=str(error),
            )
        session = self._session_factory()
        try:
            notification = session.get(Notification, message.notification_id)
            if notification is None:
                return
            if error is None:
                notification.delivered_at = utc_now()
                notification.delivery_error = None
            else:
                notification.delivery_error = str(error)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to record delivery outcome", notification_id=message.notification_id, error=str(e))
        finally:
            session.close()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["OutboundMessage", "ChannelSender", "LoggingSender", "BackgroundDelivery"]
