"""Apply event stream.

The reconciler publishes one event per status transition. Reporting
collaborators subscribe; the engine itself renders nothing.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from provision.state import Status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceEvent:
    """A single status transition."""
    resource_id: str
    previous: Status
    status: Status
    message: str = ''
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            'resource_id': self.resource_id,
            'previous': self.previous.value,
            'status': self.status.value,
            'message': self.message,
            'timestamp': self.timestamp,
        }


Subscriber = Callable[[ResourceEvent], None]


class EventBus:
    """Synchronous fan-out to subscribers.

    Events may be published from worker threads; delivery is serialised so
    subscribers see one event at a time. A failing subscriber is logged and
    skipped.
    """

    def __init__(self, subscribers: Optional[list[Subscriber]] = None):
        self._subscribers: list[Subscriber] = list(subscribers or [])
        self._lock = threading.Lock()
        self.history: list[ResourceEvent] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, event: ResourceEvent) -> None:
        with self._lock:
            self.history.append(event)
            for subscriber in self._subscribers:
                try:
                    subscriber(event)
                except Exception as e:
                    logger.warning("Event subscriber %r failed: %s", subscriber, e)

    def emit(self, resource_id: str, previous: Status, status: Status, message: str = '') -> None:
        self.publish(ResourceEvent(resource_id, previous, status, message))

    def transitions_for(self, resource_id: str) -> list[Status]:
        """Status sequence of a resource, starting with its first previous status."""
        events = [e for e in self.history if e.resource_id == resource_id]
        if not events:
            return []
        return [events[0].previous] + [e.status for e in events]


def log_subscriber(event: ResourceEvent) -> None:
    """Subscriber that writes transitions to the log."""
    suffix = f": {event.message}" if event.message else ''
    if event.status == Status.FAILED:
        logger.error("[%s] %s -> %s%s", event.resource_id, event.previous.value,
                     event.status.value, suffix)
    else:
        logger.info("[%s] %s -> %s%s", event.resource_id, event.previous.value,
                    event.status.value, suffix)
