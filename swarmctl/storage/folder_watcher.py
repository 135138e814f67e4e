"""Watch-directory ingestion.

Scans a directory for torrent files once at start, then follows watchdog
events for files created in or moved into it. Each candidate is handed to
an ``ingest`` callable (the session controller submits an add through its
dispatcher) and the source file is deleted only after the add succeeds.

An add that fails with :class:`TorrentAlreadyExistsError` counts as
success: the content is already tracked. Other failures are logged and the
file stays where it is. Paths whose add is still pending are remembered so
duplicate events do not decode the same file twice.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from functools import partial
from pathlib import Path
from typing import Callable

from watchdog.events import (
    DirCreatedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from swarmctl.storage.fs import LocalFileSystem
from swarmctl.utils.exceptions import TorrentAlreadyExistsError

logger = logging.getLogger(__name__)

IngestCallback = Callable[[Path], "Future[object]"]


class TorrentFileHandler(FileSystemEventHandler):
    """Forwards created and moved-in files to the watcher."""

    def __init__(self, callback: Callable[[Path], None]) -> None:
        super().__init__()
        self.callback = callback

    def on_created(self, event: DirCreatedEvent | FileCreatedEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_moved(self, event: DirMovedEvent | FileMovedEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.dest_path)

    def _forward(self, raw_path: str | bytes) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="surrogateescape")
        try:
            self.callback(Path(raw_path))
        except Exception:
            logger.exception("Error handling watch-dir event for %s", raw_path)


class DirectoryWatcher:
    """Ingests torrent files dropped into a directory."""

    def __init__(
        self,
        directory: str | Path,
        ingest: IngestCallback,
        fs: LocalFileSystem | None = None,
        suffix: str = ".torrent",
        delete_after_add: bool = True,
        recursive: bool = False,
    ) -> None:
        """Initialize watcher.

        Args:
            directory: Directory to watch
            ingest: Called with a candidate path; returns a future that
                completes when the add finishes
            fs: Filesystem facade used for scanning and deleting
            suffix: File suffix to ingest (case-insensitive)
            delete_after_add: Delete the source file after a successful add
            recursive: Also follow events in subdirectories

        """
        self.fs = fs or LocalFileSystem()
        self.directory = Path(directory).expanduser().resolve()
        self.ingest = ingest
        self.suffix = suffix.lower()
        self.delete_after_add = delete_after_add
        self.recursive = recursive

        self.observer: Observer | None = None
        self.is_watching = False
        self._lock = threading.Lock()
        self._in_flight: dict[Path, Future] = {}
        self.logger = logging.getLogger(__name__)
        self.stats = {
            "submitted": 0,
            "added": 0,
            "already_exists": 0,
            "failed": 0,
            "duplicates_skipped": 0,
        }

    async def start(self) -> None:
        """Start the observer, then scan files already present."""
        if self.is_watching:
            self.logger.warning("Watch dir: %s already watched", self.directory)
            return

        self.directory.mkdir(parents=True, exist_ok=True)
        self.is_watching = True

        self.observer = Observer()
        self.observer.schedule(
            TorrentFileHandler(self._on_candidate),
            str(self.directory),
            recursive=self.recursive,
        )
        self.observer.start()

        found = self.scan()
        self.logger.info(
            "Watch dir: started on %s (%d existing file(s), recursive=%s)",
            self.directory,
            found,
            self.recursive,
        )

    def scan(self) -> int:
        """Submit every matching file currently in the directory."""
        files = self.fs.list_files(str(self.directory), self.suffix)
        for path in files:
            self._on_candidate(path)
        return len(files)

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the observer and cancel adds that have not started yet."""
        if not self.is_watching:
            return
        self.is_watching = False

        observer, self.observer = self.observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, timeout)
            if observer.is_alive():
                self.logger.warning("Watch dir: observer did not stop within %.1fs", timeout)

        with self._lock:
            pending = list(self._in_flight.values())
        cancelled = sum(1 for future in pending if future.cancel())
        self.logger.info(
            "Watch dir: stopped on %s (%d pending add(s) cancelled)",
            self.directory,
            cancelled,
        )

    def _matches(self, path: Path) -> bool:
        return path.name.lower().endswith(self.suffix)

    def _on_candidate(self, path: Path) -> None:
        if not self.is_watching:
            return
        if not self._matches(path):
            return
        # Events can arrive for files already ingested and deleted.
        if not path.is_file():
            return

        with self._lock:
            if path in self._in_flight:
                self.stats["duplicates_skipped"] += 1
                return
            try:
                future = self.ingest(path)
            except Exception as e:
                self.stats["failed"] += 1
                self.logger.warning("Watch dir: could not submit %s: %s", path, e)
                return
            self._in_flight[path] = future
            self.stats["submitted"] += 1

        self.logger.debug("Watch dir: submitted %s", path)
        future.add_done_callback(partial(self._on_add_done, path))

    def _on_add_done(self, path: Path, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(path) is future:
                del self._in_flight[path]

        if future.cancelled():
            self.logger.debug("Watch dir: add of %s cancelled", path)
            return

        exc = future.exception()
        if exc is None:
            self.stats["added"] += 1
            self.logger.info("Watch dir: added %s", path.name)
        elif isinstance(exc, TorrentAlreadyExistsError):
            self.stats["already_exists"] += 1
            self.logger.debug("Watch dir: %s already added", path.name)
        else:
            self.stats["failed"] += 1
            self.logger.warning("Watch dir: failed to add %s: %s", path, exc)
            return

        if self.delete_after_add:
            try:
                self.fs.delete(str(path))
            except OSError as e:
                self.logger.warning("Watch dir: could not delete %s: %s", path, e)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._in_flight)
