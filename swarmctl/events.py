"""In-process listener bus for engine and session events.

The engine (and the session controller itself) publishes typed events;
any number of independent listeners subscribe per :class:`EventCategory`.
Registration returns an opaque :class:`ListenerHandle` used to unsubscribe.

Delivery is synchronous on the publishing thread, which is usually an engine
callback thread rather than the event loop. Each publish iterates a snapshot
of the category's listeners taken at the start of the round, so listeners
may register or unregister (themselves or siblings) from inside a callback.
"""

from __future__ import annotations

import itertools
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from swarmctl.utils.exceptions import ListenerError
from swarmctl.utils.logging_config import get_logger, log_exception


class EventCategory(Enum):
    """Event categories published on the bus."""

    SESSION_STARTED = "session_started"
    SESSION_STOPPED = "session_stopped"
    SESSION_ERROR = "session_error"
    NAT_ERROR = "nat_error"
    IP_FILTER_PARSED = "ip_filter_parsed"
    TASK_ADDED = "task_added"
    TASK_LOADED = "task_loaded"
    TASK_FINISHED = "task_finished"
    TASK_MOVING = "task_moving"
    TASK_MOVED = "task_moved"
    METADATA_LOADED = "metadata_loaded"
    RESTORE_ERROR = "restore_error"


@dataclass
class Event:
    """Base event class."""

    category: EventCategory = EventCategory.SESSION_STARTED
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "category": self.category.value,
            "timestamp": self.timestamp,
            "event_id": self.event_id,
            "data": self.data,
        }


@dataclass
class SessionStartedEvent(Event):
    """The engine session is up."""

    def __post_init__(self):
        self.category = EventCategory.SESSION_STARTED


@dataclass
class SessionStoppedEvent(Event):
    """The engine session is down."""

    def __post_init__(self):
        self.category = EventCategory.SESSION_STOPPED


@dataclass
class SessionErrorEvent(Event):
    """Session-level failure, including dispatcher unit failures."""

    message: str = ""

    def __post_init__(self):
        self.category = EventCategory.SESSION_ERROR
        self.data.update({"message": self.message})


@dataclass
class NatErrorEvent(Event):
    """Port mapping (UPnP / NAT-PMP) failure."""

    message: str = ""

    def __post_init__(self):
        self.category = EventCategory.NAT_ERROR
        self.data.update({"message": self.message})


@dataclass
class IpFilterParsedEvent(Event):
    """IP filter file loaded by the engine."""

    rule_count: int = 0

    def __post_init__(self):
        self.category = EventCategory.IP_FILTER_PARSED
        self.data.update({"rule_count": self.rule_count})


@dataclass
class TaskEvent(Event):
    """Base for per-torrent events."""

    torrent_id: str = ""

    def __post_init__(self):
        self.data.update({"torrent_id": self.torrent_id})


@dataclass
class TaskAddedEvent(TaskEvent):
    def __post_init__(self):
        super().__post_init__()
        self.category = EventCategory.TASK_ADDED


@dataclass
class TaskLoadedEvent(TaskEvent):
    """A persisted torrent was restored into the engine."""

    def __post_init__(self):
        super().__post_init__()
        self.category = EventCategory.TASK_LOADED


@dataclass
class TaskFinishedEvent(TaskEvent):
    def __post_init__(self):
        super().__post_init__()
        self.category = EventCategory.TASK_FINISHED


@dataclass
class TaskMovingEvent(TaskEvent):
    def __post_init__(self):
        super().__post_init__()
        self.category = EventCategory.TASK_MOVING


@dataclass
class TaskMovedEvent(TaskEvent):
    success: bool = True

    def __post_init__(self):
        super().__post_init__()
        self.category = EventCategory.TASK_MOVED
        self.data.update({"success": self.success})


@dataclass
class MetadataLoadedEvent(TaskEvent):
    """Metadata for a torrent became available, or fetching it failed.

    ``metadata`` carries the raw bencoded bytes when the engine has them.
    """

    error: str | None = None
    metadata: bytes | None = field(default=None, repr=False)

    def __post_init__(self):
        super().__post_init__()
        self.category = EventCategory.METADATA_LOADED
        self.data.update({"error": self.error})


@dataclass
class RestoreErrorEvent(TaskEvent):
    """A persisted torrent could not be restored."""

    error: str | None = None

    def __post_init__(self):
        super().__post_init__()
        self.category = EventCategory.RESTORE_ERROR
        self.data.update({"error": self.error})


Listener = Callable[[Event], None]


@dataclass(frozen=True)
class ListenerHandle:
    """Opaque registration token returned by :meth:`ListenerBus.register`."""

    category: EventCategory
    token: int


class ListenerBus:
    """Thread-safe typed publish/subscribe registry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[EventCategory, dict[int, Listener]] = {}
        self._tokens = itertools.count(1)
        self.logger = get_logger(__name__)
        self.last_failure: ListenerError | None = None
        self.stats = {
            "events_published": 0,
            "listener_failures": 0,
        }

    def register(self, category: EventCategory, callback: Listener) -> ListenerHandle:
        """Subscribe ``callback`` to ``category``.

        Listeners registered while a publish round is in progress receive
        only subsequent rounds.
        """
        with self._lock:
            token = next(self._tokens)
            self._listeners.setdefault(category, {})[token] = callback
        return ListenerHandle(category, token)

    def unregister(self, handle: ListenerHandle) -> bool:
        """Remove a registration. Idempotent; returns True if it was live."""
        with self._lock:
            listeners = self._listeners.get(handle.category)
            if listeners is None:
                return False
            return listeners.pop(handle.token, None) is not None

    def publish(self, category: EventCategory, event: Event | None = None) -> None:
        """Deliver ``event`` to a snapshot of ``category`` listeners in order.

        A failing listener is logged and skipped; the remaining listeners
        still receive the event and nothing propagates to the publisher.
        """
        if event is None:
            event = Event(category=category)
        elif event.category is not category:
            msg = f"Event category {event.category} does not match {category}"
            raise ValueError(msg)

        with self._lock:
            snapshot = list(self._listeners.get(category, {}).values())
            self.stats["events_published"] += 1

        for callback in snapshot:
            try:
                callback(event)
            except Exception as e:
                failure = ListenerError(
                    f"Listener failed for {category.value}",
                    {"listener": repr(callback), "event_id": event.event_id},
                )
                failure.__cause__ = e
                with self._lock:
                    self.stats["listener_failures"] += 1
                    self.last_failure = failure
                log_exception(self.logger, failure, "Listener bus")

    def emit(self, event: Event) -> None:
        """Publish ``event`` under its own category."""
        self.publish(event.category, event)

    def listener_count(self, category: EventCategory) -> int:
        with self._lock:
            return len(self._listeners.get(category, {}))

    def clear(self) -> None:
        """Drop every registration."""
        with self._lock:
            self._listeners.clear()

    def get_stats(self) -> dict[str, Any]:
        """Get bus statistics."""
        with self._lock:
            return {
                **self.stats,
                "listeners": {
                    category.value: len(listeners)
                    for category, listeners in self._listeners.items()
                },
            }
