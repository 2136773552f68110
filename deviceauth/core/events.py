"""
Event stream consumed by the UI through the control plane.

Events are kept in a bounded in-memory buffer with monotonically
increasing ids; a consumer polls with the last id it has seen.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Final, List, Optional

DEFAULT_CAPACITY: Final[int] = 200

# Topics
NOTICE: Final[str] = "notice"
UPDATER: Final[str] = "updater"
MIGRATION_SUCCESS: Final[str] = "migration-success"
INIT_COMPLETE: Final[str] = "init-complete"

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Event:
    id: int
    topic: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class Notice:
    """User-facing notice, e.g. after a server-requested UID reset."""
    kind: str
    title: str
    message: str
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "title": self.title, "message": self.message, "detail": self.detail}


class EventBus:
    """Thread-safe bounded event buffer."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._events: Deque[Event] = deque(maxlen=capacity)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def publish(self, topic: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        with self._lock:
            event = Event(id=next(self._ids), topic=topic, payload=dict(payload or {}))
            self._events.append(event)
        logger.debug("Published %s event #%d", topic, event.id)
        return event

    def notify(self, notice: Notice) -> Event:
        logger.info("%s: %s", notice.title, notice.message)
        return self.publish(NOTICE, notice.to_dict())

    def since(self, event_id: int = 0, topic: Optional[str] = None) -> List[Event]:
        """Return buffered events newer than event_id, oldest first."""
        with self._lock:
            events = [event for event in self._events if event.id > event_id]
        if topic is not None:
            events = [event for event in events if event.topic == topic]
        return events

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._events[-1].id if self._events else 0
