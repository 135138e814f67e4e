"""Magnet metadata resolution with per-hash deduplication.

``resolve`` parses the magnet synchronously and hands back a
:class:`MetadataHandle` that completes once the engine delivers the
torrent's metadata. Concurrent resolves for one info hash share a single
engine fetch and a single ``METADATA_LOADED`` listener; every caller still
gets its own handle, completed with the same outcome.

Resolution (listener fires) and cancellation (``cancel``/``cancel_all``)
race on engine and caller threads. A fetch is settled by whichever side
first claims it; the other side then does nothing, so the bus listener is
removed exactly once.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from functools import partial
from typing import Any, Callable, Generator

from swarmctl.core.magnet import MagnetInfo, parse_magnet
from swarmctl.core.metainfo import TorrentMetaInfo, decode_metainfo
from swarmctl.events import (
    Event,
    EventCategory,
    ListenerBus,
    ListenerHandle,
    MetadataLoadedEvent,
)
from swarmctl.session.types import TransferEngineProtocol
from swarmctl.utils.exceptions import DecodeError, TorrentError
from swarmctl.utils.logging_config import get_logger


class MetadataHandle:
    """One-shot completion handle for a single ``resolve`` caller.

    Awaitable from asyncio code; ``result(timeout)`` blocks from threads.
    ``cancel`` only affects this caller.
    """

    def __init__(self, info_hash: str) -> None:
        self.info_hash = info_hash
        self._future: concurrent.futures.Future[TorrentMetaInfo] = (
            concurrent.futures.Future()
        )

    def done(self) -> bool:
        return self._future.done()

    def cancelled(self) -> bool:
        return self._future.cancelled()

    def cancel(self) -> bool:
        return self._future.cancel()

    def result(self, timeout: float | None = None) -> TorrentMetaInfo:
        return self._future.result(timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        return self._future.exception(timeout)

    def add_done_callback(self, fn: Callable[[MetadataHandle], Any]) -> None:
        self._future.add_done_callback(lambda _f: fn(self))

    def __await__(self) -> Generator[Any, None, TorrentMetaInfo]:
        return asyncio.wrap_future(self._future).__await__()

    def _set_result(self, metainfo: TorrentMetaInfo) -> bool:
        try:
            self._future.set_result(metainfo)
        except concurrent.futures.InvalidStateError:
            return False
        return True

    def _set_exception(self, exc: BaseException) -> bool:
        try:
            self._future.set_exception(exc)
        except concurrent.futures.InvalidStateError:
            return False
        return True


class _PendingFetch:
    """Shared state for every caller waiting on one info hash."""

    def __init__(self, info_hash: str) -> None:
        self.info_hash = info_hash
        self.handles: list[MetadataHandle] = []
        self.listener: ListenerHandle | None = None
        self._claimed = False

    def claim(self) -> bool:
        """Exchange-once: only the first caller gets True.

        Called with the coordinator lock held.
        """
        if self._claimed:
            return False
        self._claimed = True
        return True

    @property
    def settled(self) -> bool:
        return self._claimed


class MagnetFetchCoordinator:
    """Deduplicates concurrent metadata fetches per info hash."""

    def __init__(self, engine: TransferEngineProtocol, bus: ListenerBus) -> None:
        self.engine = engine
        self.bus = bus
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        self._pending: dict[str, _PendingFetch] = {}

    def resolve(self, magnet_uri: str) -> tuple[MagnetInfo, MetadataHandle]:
        """Parse ``magnet_uri`` and return its info plus a pending metadata handle.

        Raises:
            UnknownSourceError: not a magnet URI.
            DecodeError: the magnet's info hash is malformed.

        """
        info = parse_magnet(magnet_uri)
        info_hash = info.info_hash
        handle = MetadataHandle(info_hash)

        cached = self.engine.get_cached_metadata(info_hash)
        if cached is not None:
            self._complete([handle], cached)
            return info, handle

        with self._lock:
            pending = self._pending.get(info_hash)
            if pending is not None and not pending.settled:
                pending.handles.append(handle)
                self.logger.debug("Joined pending metadata fetch for %s", info_hash)
                return info, handle

            pending = _PendingFetch(info_hash)
            pending.handles.append(handle)
            self._pending[info_hash] = pending
            pending.listener = self.bus.register(
                EventCategory.METADATA_LOADED,
                partial(self._on_metadata_loaded, pending),
            )

        # Metadata may have landed between the first cache probe and the
        # listener registration.
        cached = self.engine.get_cached_metadata(info_hash)
        if cached is not None:
            if self._settle(pending):
                self._complete(pending.handles, cached)
            return info, handle

        try:
            self.engine.fetch_metadata(magnet_uri)
        except Exception as e:
            if self._settle(pending):
                self.logger.warning("Metadata fetch for %s failed to start: %s", info_hash, e)
                self._fail(pending.handles, e)
        else:
            self.logger.info("Fetching metadata for %s", info_hash)
        return info, handle

    def _settle(self, pending: _PendingFetch) -> bool:
        """Claim ``pending`` and detach it from the bus and the pending table."""
        with self._lock:
            if not pending.claim():
                return False
            if self._pending.get(pending.info_hash) is pending:
                del self._pending[pending.info_hash]
        if pending.listener is not None:
            self.bus.unregister(pending.listener)
        return True

    def _on_metadata_loaded(self, pending: _PendingFetch, event: Event) -> None:
        if not isinstance(event, MetadataLoadedEvent):
            return
        if event.torrent_id.lower() != pending.info_hash:
            return
        if not self._settle(pending):
            return

        if event.error:
            self._fail(
                pending.handles,
                TorrentError(
                    f"Metadata fetch failed: {event.error}",
                    {"info_hash": pending.info_hash},
                ),
            )
            return
        if event.metadata is None:
            self._fail(
                pending.handles,
                DecodeError("Unknown metadata", {"info_hash": pending.info_hash}),
            )
            return
        self._complete(pending.handles, event.metadata)

    def _complete(self, handles: list[MetadataHandle], raw: bytes) -> None:
        try:
            metainfo = decode_metainfo(raw)
        except DecodeError as e:
            self.logger.warning("Could not decode metadata: %s", e)
            self._fail(handles, e)
            return
        except Exception as e:
            self.logger.exception("Unexpected failure decoding metadata")
            self._fail(handles, DecodeError(f"Could not decode metadata: {e}"))
            return
        for handle in handles:
            handle._set_result(metainfo)

    def _fail(self, handles: list[MetadataHandle], exc: BaseException) -> None:
        for handle in handles:
            handle._set_exception(exc)

    def is_pending(self, info_hash: str) -> bool:
        with self._lock:
            return info_hash.lower() in self._pending

    @property
    def pending_hashes(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def cancel(self, info_hash: str) -> bool:
        """Abandon the fetch for ``info_hash``.

        Only applies to hashes not yet added as torrents. Waiting handles
        are cancelled. Returns False when there is nothing to cancel.
        """
        info_hash = info_hash.lower()
        with self._lock:
            pending = self._pending.get(info_hash)
        if pending is None:
            return False
        if self.engine.get_task(info_hash) is not None:
            self.logger.debug("Not cancelling %s: already added as a torrent", info_hash)
            return False
        return self._abandon(pending)

    def cancel_all(self) -> int:
        """Abandon every pending fetch. Used on session stop."""
        with self._lock:
            pending = list(self._pending.values())
        return sum(1 for p in pending if self._abandon(p))

    def _abandon(self, pending: _PendingFetch) -> bool:
        if not self._settle(pending):
            return False
        try:
            self.engine.cancel_fetch(pending.info_hash)
        except Exception as e:
            self.logger.warning("Engine failed to cancel fetch %s: %s", pending.info_hash, e)
        for handle in pending.handles:
            handle.cancel()
        self.logger.info("Cancelled metadata fetch for %s", pending.info_hash)
        return True
