"""Notification Collaborator.

The core calls ``Notifier.notify(recipient_id, notification_type, payload)``
on every transition, level advance, escalation and deadline warning.
Delivery is fire-and-forget: ``NotificationDispatcher`` queues messages
raised inside an operation, hands them to the notifier only once the
operation has committed, and logs delivery failures without propagating
them.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from .config import NotificationType

logger = logging.getLogger(__name__)


@runtime_checkable
class Notifier(Protocol):
    """Outbound notification port."""

    def notify(self, recipient_id: str, notification_type: NotificationType, payload: Dict[str, Any]) -> None:
        ...


@dataclass
class Notification:
    """A single queued or delivered notification."""

    recipient_id: str
    notification_type: NotificationType
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RecordingNotifier:
    """Keeps every notification in memory. Useful for tests and dry runs."""

    def __init__(self) -> None:
        self.sent: List[Notification] = []
        self._lock = threading.Lock()

    def notify(self, recipient_id: str, notification_type: NotificationType, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append(Notification(recipient_id, notification_type, dict(payload)))

    def for_recipient(self, recipient_id: str) -> List[Notification]:
        return [n for n in self.sent if n.recipient_id == recipient_id]

    def of_type(self, notification_type: NotificationType) -> List[Notification]:
        return [n for n in self.sent if n.notification_type == notification_type]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()


class LoggingNotifier:
    """Writes notifications to the log instead of delivering them."""

    def notify(self, recipient_id: str, notification_type: NotificationType, payload: Dict[str, Any]) -> None:
        logger.info(
            "Notification %s -> %s: %s",
            notification_type.value,
            recipient_id,
            payload.get("title", ""),
        )


class NotificationDispatcher:
    """Queues notifications per operation and flushes them after commit."""

    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        self._notifier = notifier or LoggingNotifier()
        self._local = threading.local()

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    def _queue(self) -> Optional[List[Notification]]:
        return getattr(self._local, "queue", None)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Collect notifications; deliver them only if the block succeeds."""
        outer = self._queue()
        if outer is not None:
            yield
            return
        self._local.queue = []
        try:
            yield
        except BaseException:
            dropped = len(self._local.queue)
            if dropped:
                logger.debug("Dropping %d notifications from failed operation", dropped)
            raise
        else:
            pending = list(self._local.queue)
            self._local.queue = None
            for notification in pending:
                self._deliver(notification)
        finally:
            self._local.queue = None

    def send(
        self,
        recipient_id: Optional[str],
        notification_type: NotificationType,
        **payload: Any,
    ) -> None:
        if not recipient_id:
            logger.debug("Skipping %s notification with no recipient", notification_type.value)
            return
        notification = Notification(recipient_id, notification_type, payload)
        queue = self._queue()
        if queue is not None:
            queue.append(notification)
        else:
            self._deliver(notification)

    def _deliver(self, notification: Notification) -> None:
        try:
            self._notifier.notify(
                notification.recipient_id,
                notification.notification_type,
                notification.payload,
            )
        except Exception:
            logger.exception(
                "Notification delivery failed: %s -> %s",
                notification.notification_type.value,
                notification.recipient_id,
            )
