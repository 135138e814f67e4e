"""Downloads-completed signal.

Fires once every task the engine tracks has finished downloading. The
controller subscribes to it at start and, with ``auto_stop_when_complete``,
stops the session when it fires.
"""

from __future__ import annotations

import itertools
import threading
from typing import Callable

from swarmctl.events import Event, EventCategory, ListenerBus, ListenerHandle
from swarmctl.session.signals import Subscription
from swarmctl.session.types import TransferEngineProtocol
from swarmctl.utils.logging_config import get_logger

logger = get_logger(__name__)


class DownloadsCompletedSignal:
    """Watches ``TASK_FINISHED`` and reports when nothing is left to download.

    The bus listener is registered while at least one subscriber exists.
    """

    def __init__(self, engine: TransferEngineProtocol, bus: ListenerBus) -> None:
        self.engine = engine
        self.bus = bus
        self._lock = threading.Lock()
        self._subscribers: dict[int, Callable[[], None]] = {}
        self._tokens = itertools.count(1)
        self._listener: ListenerHandle | None = None

    def subscribe(self, callback: Callable[[], None]) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = callback
            if self._listener is None:
                self._listener = self.bus.register(
                    EventCategory.TASK_FINISHED, self._on_task_finished
                )
        return Subscription(lambda: self._unsubscribe(token))

    def _unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)
            listener = None
            if not self._subscribers:
                listener, self._listener = self._listener, None
        if listener is not None:
            self.bus.unregister(listener)

    def all_finished(self) -> bool:
        tasks = [t for t in self.engine.get_tasks() if t.is_valid()]
        return bool(tasks) and all(t.is_finished() for t in tasks)

    def _on_task_finished(self, _event: Event) -> None:
        if not self.all_finished():
            return
        with self._lock:
            callbacks = list(self._subscribers.values())
        logger.info("All downloads completed")
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Downloads-completed subscriber %r failed", callback)
