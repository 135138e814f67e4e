"""Tests for watch-directory ingestion."""

from __future__ import annotations

import threading
from concurrent.futures import Future
from pathlib import Path

import pytest

from swarmctl.storage.folder_watcher import DirectoryWatcher, TorrentFileHandler
from swarmctl.utils.exceptions import DecodeError, TorrentAlreadyExistsError

pytestmark = [pytest.mark.unit, pytest.mark.storage]


class RecordingIngest:
    """Ingest callable handing out futures the test completes by hand."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.futures: dict[Path, list[Future]] = {}

    def __call__(self, path: Path) -> Future:
        future: Future = Future()
        with self.lock:
            self.futures.setdefault(path, []).append(future)
        return future

    def count(self, path: Path) -> int:
        with self.lock:
            return len(self.futures.get(path, []))


@pytest.fixture
def ingest():
    return RecordingIngest()


@pytest.fixture
def watch_dir(tmp_path):
    directory = tmp_path / "watch"
    directory.mkdir()
    return directory


def _drop(directory: Path, name: str) -> Path:
    path = directory / name
    path.write_bytes(b"d4:infode")
    return path.resolve()


class TestScan:
    """Files already present at start."""

    @pytest.mark.asyncio
    async def test_existing_files_submitted(self, watch_dir, ingest):
        first = _drop(watch_dir, "a.torrent")
        second = _drop(watch_dir, "B.Torrent")
        _drop(watch_dir, "readme.txt")
        watcher = DirectoryWatcher(watch_dir, ingest)

        await watcher.start()
        try:
            assert ingest.count(first) == 1
            assert ingest.count(second) == 1
            assert sum(len(f) for f in ingest.futures.values()) == 2
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_creates_missing_directory(self, tmp_path, ingest):
        watcher = DirectoryWatcher(tmp_path / "new" / "dir", ingest)

        await watcher.start()
        try:
            assert (tmp_path / "new" / "dir").is_dir()
        finally:
            await watcher.stop()


class TestCandidates:
    """Completion handling for individual files."""

    @pytest.mark.asyncio
    async def test_duplicate_events_single_add(self, watch_dir, ingest):
        watcher = DirectoryWatcher(watch_dir, ingest)
        await watcher.start()
        try:
            path = _drop(watch_dir, "dup.torrent")
            for _ in range(5):
                watcher._on_candidate(path)

            assert ingest.count(path) == 1
            assert watcher.pending_count == 1
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_deleted_after_success(self, watch_dir, ingest):
        watcher = DirectoryWatcher(watch_dir, ingest)
        await watcher.start()
        try:
            path = _drop(watch_dir, "ok.torrent")
            watcher._on_candidate(path)

            ingest.futures[path][0].set_result(object())

            assert not path.exists()
            assert watcher.stats["added"] == 1
            assert watcher.pending_count == 0
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_already_exists_counts_as_success(self, watch_dir, ingest):
        watcher = DirectoryWatcher(watch_dir, ingest)
        await watcher.start()
        try:
            path = _drop(watch_dir, "known.torrent")
            watcher._on_candidate(path)

            ingest.futures[path][0].set_exception(TorrentAlreadyExistsError("a" * 40))

            assert not path.exists()
            assert watcher.stats["already_exists"] == 1
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_failure_keeps_file(self, watch_dir, ingest):
        watcher = DirectoryWatcher(watch_dir, ingest)
        await watcher.start()
        try:
            path = _drop(watch_dir, "bad.torrent")
            watcher._on_candidate(path)

            ingest.futures[path][0].set_exception(DecodeError("truncated"))

            assert path.exists()
            assert watcher.stats["failed"] == 1
            # a later event may retry the file
            watcher._on_candidate(path)
            assert ingest.count(path) == 2
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_keep_source_when_configured(self, watch_dir, ingest):
        watcher = DirectoryWatcher(watch_dir, ingest, delete_after_add=False)
        await watcher.start()
        try:
            path = _drop(watch_dir, "keep.torrent")
            watcher._on_candidate(path)

            ingest.futures[path][0].set_result(object())

            assert path.exists()
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_submit_failure_logged(self, watch_dir):
        def _refuse(_path):
            msg = "dispatcher stopped"
            raise RuntimeError(msg)

        watcher = DirectoryWatcher(watch_dir, _refuse)
        await watcher.start()
        try:
            path = _drop(watch_dir, "x.torrent")
            watcher._on_candidate(path)

            assert watcher.stats["failed"] >= 1
            assert path.exists()
        finally:
            await watcher.stop()

    def test_ignored_when_not_watching(self, watch_dir, ingest):
        watcher = DirectoryWatcher(watch_dir, ingest)
        path = _drop(watch_dir, "early.torrent")

        watcher._on_candidate(path)

        assert ingest.count(path) == 0


class TestObserver:
    """Events delivered by watchdog."""

    @pytest.mark.asyncio
    async def test_new_file_picked_up(self, watch_dir, ingest, wait_until):
        watcher = DirectoryWatcher(watch_dir, ingest)
        await watcher.start()
        try:
            path = _drop(watch_dir, "late.torrent")

            await wait_until(lambda: ingest.count(path) >= 1, timeout=5.0)
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending(self, watch_dir, ingest):
        path = _drop(watch_dir, "pending.torrent")
        watcher = DirectoryWatcher(watch_dir, ingest)
        await watcher.start()

        await watcher.stop()

        assert ingest.futures[path][0].cancelled()
        assert path.exists()
        assert not watcher.is_watching

    def test_handler_forwards_moves(self, tmp_path):
        seen = []
        handler = TorrentFileHandler(seen.append)

        class _Moved:
            is_directory = False
            src_path = str(tmp_path / "a.part")
            dest_path = str(tmp_path / "a.torrent")

        class _DirCreated:
            is_directory = True
            src_path = str(tmp_path / "sub")

        handler.on_moved(_Moved())
        handler.on_created(_DirCreated())

        assert seen == [tmp_path / "a.torrent"]
