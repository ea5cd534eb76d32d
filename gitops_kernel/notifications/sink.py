"""
Notification sink — SyncOperation and HealthStatus transitions for
external observability. Transport is left to the sink implementation.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import List, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_FINISHED = "sync_finished"
    PENDING_APPROVAL = "pending_approval"
    HEALTH_CHANGED = "health_changed"
    RECONCILE_FAILED = "reconcile_failed"


class Notification(BaseModel):
    event: NotificationEvent
    environment: str
    payload: dict = {}
    emitted_at: datetime


class NotificationSink(Protocol):
    def emit(self, notification: Notification) -> None: ...


class LoggingSink:
    """Writes every notification to the ``gitops_kernel.notifications`` log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def emit(self, notification: Notification) -> None:
        logger.log(
            self.level,
            "[%s] %s %s",
            notification.environment,
            notification.event.value,
            notification.payload,
        )


class InMemorySink:
    """Collects notifications; used by tests and the API."""

    def __init__(self, limit: int = 1000):
        self.limit = limit
        self._items: List[Notification] = []
        self._lock = threading.Lock()

    def emit(self, notification: Notification) -> None:
        with self._lock:
            self._items.append(notification)
            if len(self._items) > self.limit:
                del self._items[: len(self._items) - self.limit]

    def events(self, environment: str = None) -> List[Notification]:
        with self._lock:
            return [
                n for n in self._items
                if environment is None or n.environment == environment
            ]


class FanoutSink:
    """Delivers to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: List[NotificationSink]):
        self.sinks = list(sinks)

    def emit(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                sink.emit(notification)
            except Exception:
                logger.exception(
                    "Notification sink %s failed for %s",
                    type(sink).__name__, notification.event.value,
                )
