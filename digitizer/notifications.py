"""
Worker notifications.

The worker publishes what happens to each job (became active, progress,
completed, failed) on a NotificationBus. Logging and metrics subscribe to it;
the state machine never reads it back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Optional

logger = logging.getLogger("digitizer.notifications")


class WorkerEvent(str, Enum):
    ACTIVE = "active"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Notification:
    event: WorkerEvent
    job_id: str
    record_id: str = ""
    attempts_made: int = 0
    progress: Optional[int] = None
    error: Optional[str] = None
    final: bool = False
    result: Optional[dict] = None


Listener = Callable[[Notification], None]


class Subscription:
    def __init__(self, bus: "NotificationBus", token: int):
        self._bus = bus
        self._token = token
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self._bus._unsubscribe(self._token)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()


class NotificationBus:
    def __init__(self):
        self._listeners: Dict[int, tuple[Listener, FrozenSet[WorkerEvent]]] = {}
        self._next_token = 0

    def subscribe(self, listener: Listener, events: Optional[Iterable[WorkerEvent]] = None) -> Subscription:
        """Register `listener` for `events` (all events when omitted)."""
        wanted = frozenset(events) if events is not None else frozenset(WorkerEvent)
        self._next_token += 1
        self._listeners[self._next_token] = (listener, wanted)
        return Subscription(self, self._next_token)

    def _unsubscribe(self, token: int) -> None:
        self._listeners.pop(token, None)

    def emit(self, notification: Notification) -> None:
        # A failing listener must not break job processing.
        for listener, wanted in list(self._listeners.values()):
            if notification.event not in wanted:
                continue
            try:
                listener(notification)
            except Exception:
                logger.exception("notification_listener_failed event=%s job_id=%s", notification.event.value, notification.job_id)

    def __len__(self) -> int:
        return len(self._listeners)
