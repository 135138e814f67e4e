"""Single-worker dispatcher for mutating engine calls.

Every add/delete/pause/reconfigure call against the engine runs on one
daemon thread, one unit at a time, in submission order. Callers get a
:class:`concurrent.futures.Future` back (or await :meth:`TaskDispatcher.run`).

A failing unit never stops the worker: the exception is logged, stored on
the unit's future, and routed to the unit's ``on_error`` callback or, for
reported units, to the dispatcher-wide error callback (the session
controller turns those into ``SESSION_ERROR`` bus events).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable

from swarmctl.utils.exceptions import DispatcherError
from swarmctl.utils.logging_config import get_logger

ErrorCallback = Callable[[BaseException], None]
ReportCallback = Callable[[str, BaseException], None]

_STOP = object()


@dataclass
class _WorkUnit:
    seq: int
    name: str
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    future: Future = field(default_factory=Future)
    on_error: ErrorCallback | None = None
    report: bool = True


class TaskDispatcher:
    """Serializes engine mutations onto a dedicated worker thread."""

    def __init__(
        self,
        name: str = "swarmctl-dispatcher",
        error_callback: ReportCallback | None = None,
    ) -> None:
        self.name = name
        self.error_callback = error_callback
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        self._queue: queue.Queue[Any] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._accepting = False
        self._seq = itertools.count(1)
        self._current: _WorkUnit | None = None
        self._abandoned: threading.Thread | None = None
        self.stats = {
            "submitted": 0,
            "completed": 0,
            "failed": 0,
            "discarded": 0,
        }

    @property
    def is_running(self) -> bool:
        return self._accepting

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker thread. No-op if already running.

        Raises:
            DispatcherError: a worker abandoned by :meth:`stop` is still
                inside its unit.

        """
        with self._lock:
            if self._accepting:
                return
            if self._abandoned is not None:
                if self._abandoned.is_alive():
                    msg = f"Dispatcher {self.name} has a worker still running"
                    raise DispatcherError(msg, {"thread": self._abandoned.name})
                self._abandoned = None
            self._queue = queue.Queue()
            self._thread = threading.Thread(
                target=self._worker,
                args=(self._queue,),
                name=self.name,
                daemon=True,
            )
            self._accepting = True
            self._thread.start()
        self.logger.debug("Dispatcher: started %s", self.name)

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        name: str | None = None,
        on_error: ErrorCallback | None = None,
        report: bool = True,
    ) -> Future:
        """Enqueue ``fn(*args)`` for the worker.

        Args:
            fn: Callable to run on the worker thread
            *args: Positional arguments for ``fn``
            name: Label used in logs and error reports
            on_error: Called with the exception if the unit fails
            report: Send failures to the dispatcher-wide error callback
                when no ``on_error`` is given

        Raises:
            DispatcherError: the dispatcher is not running.

        """
        unit = _WorkUnit(
            seq=next(self._seq),
            name=name or getattr(fn, "__name__", "unit"),
            fn=fn,
            args=args,
            on_error=on_error,
            report=report,
        )
        with self._lock:
            if not self._accepting:
                msg = f"Dispatcher {self.name} is not running"
                raise DispatcherError(msg, {"unit": unit.name})
            self._queue.put(unit)
            self.stats["submitted"] += 1
        return unit.future

    async def run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        name: str | None = None,
        report: bool = False,
    ) -> Any:
        """Submit and await the unit's result from the event loop."""
        future = self.submit(fn, *args, name=name, report=report)
        return await asyncio.wrap_future(future)

    def _worker(self, work: queue.Queue[Any]) -> None:
        while True:
            unit = work.get()
            if unit is _STOP:
                return
            if not unit.future.set_running_or_notify_cancel():
                continue
            self._current = unit
            try:
                result = unit.fn(*unit.args)
            except BaseException as e:
                self.stats["failed"] += 1
                # Unreported units hand the failure to the awaiting caller.
                level = logging.WARNING if unit.report or unit.on_error else logging.DEBUG
                self.logger.log(level, "Dispatcher: %s failed: %s", unit.name, e)
                self._route_error(unit, e)
                unit.future.set_exception(e)
            else:
                self.stats["completed"] += 1
                unit.future.set_result(result)
            finally:
                self._current = None

    def _route_error(self, unit: _WorkUnit, exc: BaseException) -> None:
        try:
            if unit.on_error is not None:
                unit.on_error(exc)
            elif unit.report and self.error_callback is not None:
                self.error_callback(unit.name, exc)
        except Exception:
            self.logger.exception("Error callback for %s failed", unit.name)

    def stop(self, timeout: float = 10.0) -> bool:
        """Stop accepting work, discard queued units, wait for the in-flight one.

        Queued units are cancelled without running. The in-flight unit is
        awaited for at most ``timeout`` seconds; after that the daemon worker
        is abandoned so a hung engine call cannot block shutdown.

        Returns:
            True if the worker exited within ``timeout``.

        """
        with self._lock:
            if not self._accepting:
                return True
            self._accepting = False
            thread = self._thread
            work = self._queue
            self._thread = None

        discarded = 0
        while True:
            try:
                unit = work.get_nowait()
            except queue.Empty:
                break
            if unit is not _STOP and unit.future.cancel():
                discarded += 1
        self.stats["discarded"] += discarded
        work.put(_STOP)

        if thread is None or thread is threading.current_thread():
            return True

        deadline = time.monotonic() + timeout
        thread.join(timeout)
        finished = not thread.is_alive()
        if not finished:
            with self._lock:
                self._abandoned = thread
            current = self._current
            self.logger.warning(
                "Dispatcher: %s still running after %.1fs, abandoning worker",
                current.name if current else "unit",
                timeout,
            )
        self.logger.debug(
            "Dispatcher: stopped %s (discarded=%d, waited=%.3fs)",
            self.name,
            discarded,
            timeout - max(0.0, deadline - time.monotonic()),
        )
        return finished

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats,
            "running": self._accepting,
            "pending": self.pending_count,
        }
