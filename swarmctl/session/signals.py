"""Long-lived session signals.

:class:`ValueChannel` is a publish/subscribe channel that hands each new
subscriber the current value first and every later change after that; the
controller uses one for its running state.

:class:`NeedsStartObservation` is the level-triggered "needs start" poller:
it reports immediately and then keeps reporting while the session stays
down, ending for good once the session runs or the observer cancels.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from typing import Callable, Generic, TypeVar

from swarmctl.utils.logging_config import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class Subscription:
    """Cancellable registration returned by the signal helpers."""

    def __init__(self, on_cancel: Callable[[], None] | None = None) -> None:
        self._on_cancel = on_cancel
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        if self._on_cancel is not None:
            self._on_cancel()


class ValueChannel(Generic[T]):
    """Initial-value-then-updates channel."""

    def __init__(self, initial: T) -> None:
        self._lock = threading.Lock()
        self._value = initial
        self._subscribers: dict[int, Callable[[T], None]] = {}
        self._tokens = itertools.count(1)

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = callback
            current = self._value

        subscription = Subscription(lambda: self._unsubscribe(token))
        self._deliver(callback, current)
        return subscription

    def _unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def publish(self, value: T) -> None:
        with self._lock:
            self._value = value
            snapshot = list(self._subscribers.values())
        for callback in snapshot:
            self._deliver(callback, value)

    @staticmethod
    def _deliver(callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception:
            logger.exception("Channel subscriber %r failed", callback)


class NeedsStartObservation(Subscription):
    """Handle for one "needs start" observer.

    Emits ``not is_running()`` synchronously on creation, then polls every
    ``interval`` seconds while not running and emits ``True`` each time the
    session is still down. Polling ends when the session runs or
    :meth:`cancel` is called; nothing is emitted after either.
    """

    def __init__(
        self,
        is_running: Callable[[], bool],
        callback: Callable[[bool], None],
        interval: float = 1.0,
    ) -> None:
        super().__init__(self._cancel_task)
        self._is_running = is_running
        self._callback = callback
        self.interval = interval
        self.task: asyncio.Task[None] | None = None

    def _emit(self, needs_start: bool) -> None:
        if self.cancelled:
            return
        try:
            self._callback(needs_start)
        except Exception:
            logger.exception("Needs-start observer %r failed", self._callback)

    def emit_initial(self) -> bool:
        """Emit the current state. Returns True if polling should follow."""
        running = self._is_running()
        self._emit(not running)
        return not running and not self.cancelled

    async def poll(self) -> None:
        while not self.cancelled:
            await asyncio.sleep(self.interval)
            if self.cancelled or self._is_running():
                return
            self._emit(True)

    def _cancel_task(self) -> None:
        task = self.task
        if task is None or task.done():
            return
        try:
            loop = task.get_loop()
            if loop.is_closed():
                return
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                task.cancel()
            else:
                loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # Loop closed between the check and the call.
            pass
