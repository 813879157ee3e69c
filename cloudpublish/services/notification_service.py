"""Timestamped progress notices emitted while publishing."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..core.models import Notification, NotificationLevel

logger = logging.getLogger(__name__)

NotificationListener = Callable[[Notification], None]

_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
}


class NotificationService:
    """Collect publish notices and forward them to subscribers."""

    def __init__(self):
        self.notifications: List[Notification] = []
        self._listeners: List[NotificationListener] = []

    def subscribe(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: NotificationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify(
        self,
        message: str,
        level: NotificationLevel = NotificationLevel.INFO,
        related_entity: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """Record a notice and hand it to every subscriber."""

        notification = Notification(
            id=str(uuid.uuid4()),
            message=message,
            level=level,
            created_at=datetime.now(timezone.utc),
            related_entity=related_entity,
            metadata=metadata or {},
        )
        self.notifications.append(notification)
        logger.log(_LOG_LEVELS[level], "%s", message)

        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")

        return notification

    def messages(self) -> List[str]:
        return [notification.message for notification in self.notifications]

    def clear(self) -> None:
        self.notifications.clear()


def format_notification(notification: Notification) -> str:
    """Render a notice with its local timestamp, e.g. ``12:01:33 - Starting...``."""

    timestamp = notification.created_at.astimezone().strftime("%H:%M:%S")
    return f"{timestamp} - {notification.message}"
