"""In-process event bus for orchestrator notifications"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List


class EventType(Enum):
    MEASUREMENT = 'measurement'
    LOCATION_UPDATED = 'location_updated'
    HANDOVER_RECOMMENDED = 'handover_recommended'
    QUALITY_CHANGED = 'quality_changed'
    CONNECTION_CHANGED = 'connection_changed'
    UNSOLICITED = 'unsolicited'


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Any = None
    ts: float = field(default_factory=time.time)


Subscriber = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe; subscribers run on the publishing thread."""

    def __init__(self):
        self._subscribers: Dict[EventType, List[Subscriber]] = {t: [] for t in EventType}
        self._lock = threading.Lock()
        self.logger = logging.getLogger('EventBus')

    def subscribe(self, event_type: EventType, callback: Subscriber):
        with self._lock:
            if callback not in self._subscribers[event_type]:
                self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: EventType, callback: Subscriber):
        with self._lock:
            if callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)

    def subscriber_count(self, event_type: EventType) -> int:
        with self._lock:
            return len(self._subscribers[event_type])

    def publish(self, event_type: EventType, payload: Any = None) -> Event:
        event = Event(event_type, payload)

        with self._lock:
            subscribers = list(self._subscribers[event_type])

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                self.logger.exception(f'Subscriber {callback!r} failed on {event_type.name}')

        return event
