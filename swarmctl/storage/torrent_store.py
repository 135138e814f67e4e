"""In-memory torrent store.

Reference implementation of the store contract for embedding and tests.
Every read returns the stored frozen :class:`Torrent`, so callers only ever
hold snapshots.
"""

from __future__ import annotations

import itertools
import threading
from typing import Callable

from swarmctl.session.models import Torrent
from swarmctl.utils.logging_config import get_logger

logger = get_logger(__name__)

TorrentObserver = Callable[[Torrent | None], None]


class InMemoryTorrentStore:
    """Thread-safe torrent records keyed by info hash."""

    def __init__(self, torrents: list[Torrent] | None = None) -> None:
        self._lock = threading.RLock()
        self._torrents: dict[str, Torrent] = {t.id: t for t in torrents or []}
        self._observers: dict[str, dict[int, TorrentObserver]] = {}
        self._tokens = itertools.count(1)

    def add(self, torrent: Torrent) -> None:
        with self._lock:
            self._torrents[torrent.id] = torrent
        self._notify(torrent.id, torrent)

    def update(self, torrent: Torrent) -> None:
        with self._lock:
            if torrent.id not in self._torrents:
                return
            self._torrents[torrent.id] = torrent
        self._notify(torrent.id, torrent)

    def delete(self, torrent_id: str) -> None:
        with self._lock:
            removed = self._torrents.pop(torrent_id, None)
        if removed is not None:
            self._notify(torrent_id, None)

    def get_torrent_by_id(self, torrent_id: str) -> Torrent | None:
        with self._lock:
            return self._torrents.get(torrent_id)

    def get_all_torrents(self) -> list[Torrent]:
        with self._lock:
            return sorted(self._torrents.values(), key=lambda t: t.date_added)

    def observe_torrent_by_id(
        self,
        torrent_id: str,
        callback: TorrentObserver,
    ) -> Callable[[], None]:
        """Call ``callback`` with the current record, then on every change.

        Returns a function that stops the observation.
        """
        with self._lock:
            token = next(self._tokens)
            self._observers.setdefault(torrent_id, {})[token] = callback
            current = self._torrents.get(torrent_id)
        self._call(callback, current)

        def _dispose() -> None:
            with self._lock:
                observers = self._observers.get(torrent_id)
                if observers is not None:
                    observers.pop(token, None)
                    if not observers:
                        del self._observers[torrent_id]

        return _dispose

    def _notify(self, torrent_id: str, torrent: Torrent | None) -> None:
        with self._lock:
            callbacks = list(self._observers.get(torrent_id, {}).values())
        for callback in callbacks:
            self._call(callback, torrent)

    @staticmethod
    def _call(callback: TorrentObserver, torrent: Torrent | None) -> None:
        try:
            callback(torrent)
        except Exception:
            logger.exception("Torrent observer %r failed", callback)

    def __len__(self) -> int:
        with self._lock:
            return len(self._torrents)
