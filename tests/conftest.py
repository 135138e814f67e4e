"""Pytest configuration and shared fixtures for swarmctl tests."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import threading
import time
from typing import Any, Callable

import bencodepy
import pytest
import pytest_asyncio

from swarmctl.core.magnet import generate_magnet_link
from swarmctl.core.policy import EnvironmentReadings
from swarmctl.events import (
    ListenerBus,
    MetadataLoadedEvent,
    SessionStartedEvent,
    SessionStoppedEvent,
    TaskAddedEvent,
    TaskFinishedEvent,
    TaskLoadedEvent,
)
from swarmctl.models import Config, StorageConfig
from swarmctl.session.models import (
    AddTorrentParams,
    Priority,
    TaskState,
    TaskStatus,
    Torrent,
)
from swarmctl.storage.torrent_store import InMemoryTorrentStore
from swarmctl.utils.exceptions import TorrentAlreadyExistsError


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("core", "marks tests as core functionality tests"),
        ("session", "marks tests as session management tests"),
        ("storage", "marks tests as storage/watch-dir tests"),
        ("streaming", "marks tests as streaming endpoint tests"),
        ("config", "marks tests as configuration tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    # setup_logging detaches the package logger from the root logger.
    package_logger = logging.getLogger("swarmctl")
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset process-wide singletons so tests do not leak state."""
    yield
    import swarmctl.config.config as config_module
    from swarmctl.session import controller as controller_module

    config_module._config_manager = None
    controller_module.reset_controller()


@pytest.fixture(autouse=True)
def isolate_config_env(monkeypatch, tmp_path):
    """Keep user config files and SWARMCTL_* variables out of tests."""
    for key in list(os.environ):
        if key.startswith("SWARMCTL_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)


def make_torrent_bytes(
    name: str = "sample.bin",
    files: list[tuple[list[str], int]] | None = None,
    length: int = 32768,
    piece_length: int = 16384,
    announce: str | None = "http://tracker.example/announce",
) -> bytes:
    """Build a minimal, valid bencoded torrent."""
    info: dict[bytes, Any] = {
        b"name": name.encode(),
        b"piece length": piece_length,
    }
    if files:
        info[b"files"] = [
            {b"path": [p.encode() for p in path], b"length": size} for path, size in files
        ]
        total = sum(size for _, size in files)
    else:
        info[b"length"] = length
        total = length
    num_pieces = max(1, -(-total // piece_length))
    info[b"pieces"] = hashlib.sha1(name.encode()).digest() * num_pieces
    torrent: dict[bytes, Any] = {b"info": info}
    if announce:
        torrent[b"announce"] = announce.encode()
    return bencodepy.encode(torrent)


def info_hash_of(data: bytes) -> str:
    decoded = bencodepy.decode(data)
    info = decoded[b"info"] if b"info" in decoded else decoded
    return hashlib.sha1(bencodepy.encode(info)).hexdigest()


class FakeTaskHandle:
    """In-memory task handle recording every mutation."""

    def __init__(
        self,
        torrent_id: str,
        name: str = "",
        save_path: str = "/downloads",
        metadata: bytes | None = None,
        files: list[str] | None = None,
        paused: bool = False,
    ) -> None:
        self._id = torrent_id
        self.name = name or torrent_id
        self._save_path = save_path
        self._metadata = metadata
        self.files = files or []
        self.paused = paused
        self.finished = False
        self.valid = True
        self.trackers: list[str] = []
        self.sequential = False
        self.first_last = False
        self.priorities: list[Priority] = []
        self.dl_limit = -1
        self.ul_limit = -1
        self.calls: list[tuple[Any, ...]] = []

    @property
    def id(self) -> str:
        return self._id

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))

    def is_valid(self) -> bool:
        return self.valid

    def status(self) -> TaskStatus:
        state = TaskState.PAUSED if self.paused else TaskState.DOWNLOADING
        if self.finished:
            state = TaskState.FINISHED
        return TaskStatus(state=state, progress=1.0 if self.finished else 0.25, num_peers=3)

    def is_paused(self) -> bool:
        return self.paused

    def is_finished(self) -> bool:
        return self.finished

    def pause(self) -> None:
        self._record("pause")
        self.paused = True

    def resume(self) -> None:
        self._record("resume")
        self.paused = False

    def force_recheck(self) -> None:
        self._record("force_recheck")

    def force_announce(self) -> None:
        self._record("force_announce")

    def get_trackers(self) -> list[str]:
        return list(self.trackers)

    def add_trackers(self, urls: list[str]) -> None:
        self._record("add_trackers", urls)
        self.trackers.extend(u for u in urls if u not in self.trackers)

    def replace_trackers(self, urls: list[str]) -> None:
        self._record("replace_trackers", urls)
        self.trackers = list(urls)

    def set_name(self, name: str) -> None:
        self._record("set_name", name)
        self.name = name

    def move_storage(self, path: str) -> None:
        self._record("move_storage", path)
        self._save_path = path

    def save_path(self) -> str:
        return self._save_path

    def set_sequential_download(self, enabled: bool) -> None:
        self._record("set_sequential_download", enabled)
        self.sequential = enabled

    def is_sequential_download(self) -> bool:
        return self.sequential

    def set_first_last_piece_priority(self, enabled: bool) -> None:
        self._record("set_first_last_piece_priority", enabled)
        self.first_last = enabled

    def is_first_last_piece_priority(self) -> bool:
        return self.first_last

    def set_file_priorities(self, priorities: list[Priority]) -> None:
        self._record("set_file_priorities", priorities)
        self.priorities = list(priorities)

    def file_priorities(self) -> list[Priority]:
        return list(self.priorities)

    def set_download_limit(self, limit: int) -> None:
        self._record("set_download_limit", limit)
        self.dl_limit = limit

    def download_limit(self) -> int:
        return self.dl_limit

    def set_upload_limit(self, limit: int) -> None:
        self._record("set_upload_limit", limit)
        self.ul_limit = limit

    def upload_limit(self) -> int:
        return self.ul_limit

    def make_magnet(self, include_priorities: bool = False) -> str:
        priorities = None
        if include_priorities and self.priorities:
            priorities = {i: int(p) for i, p in enumerate(self.priorities)}
        return generate_magnet_link(
            self._id,
            display_name=self.name,
            trackers=self.trackers,
            prioritized_indices=priorities,
        )

    def metadata(self) -> bytes | None:
        return self._metadata

    def file_paths(self) -> list[str]:
        return list(self.files)

    def pieces(self) -> list[bool]:
        return [True, False]


class FakeEngine:
    """Synchronous in-memory transfer engine.

    Publishes on the attached bus from whatever thread calls it, like a
    real engine publishing from its callback thread.
    """

    def __init__(self, auto_start: bool = True) -> None:
        self.auto_start = auto_start
        self.bus: ListenerBus | None = None
        self.running = False
        self.settings = None
        self.tasks: dict[str, FakeTaskHandle] = {}
        self.cached_metadata: dict[str, bytes] = {}
        self.fetches: list[str] = []
        self.cancelled_fetches: list[str] = []
        self.calls: list[tuple[Any, ...]] = []
        self.call_threads: list[str] = []
        self.global_paused = False
        self.errors: list[BaseException] = []
        self._lock = threading.Lock()

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, *args))
            self.call_threads.append(threading.current_thread().name)

    def call_names(self) -> list[str]:
        with self._lock:
            return [c[0] for c in self.calls]

    def publish(self, event) -> None:
        if self.bus is not None:
            self.bus.emit(event)

    def attach(self, bus: ListenerBus) -> None:
        self.bus = bus

    def detach(self) -> None:
        self.bus = None

    def start(self) -> None:
        self._record("start")
        self.running = True
        if self.auto_start:
            self.publish(SessionStartedEvent())

    def stop(self) -> None:
        self._record("stop")
        self.running = False
        self.publish(SessionStoppedEvent())

    def is_running(self) -> bool:
        return self.running

    def apply_settings(self, settings) -> None:
        self._record("apply_settings", settings)
        self.settings = settings

    def get_settings(self):
        return self.settings

    def add_torrent(self, params: AddTorrentParams) -> str:
        self._record("add_torrent", params.info_hash)
        torrent_id = params.info_hash
        if torrent_id in self.tasks:
            raise TorrentAlreadyExistsError(torrent_id)
        metadata = params.source if isinstance(params.source, bytes) else None
        task = FakeTaskHandle(
            torrent_id,
            name=params.name,
            save_path=params.download_path or "/downloads",
            metadata=metadata,
            paused=not params.start_after_add or self.global_paused,
        )
        task.priorities = list(params.file_priorities)
        task.sequential = params.sequential_download
        self.tasks[torrent_id] = task
        self.publish(TaskAddedEvent(torrent_id=torrent_id))
        return torrent_id

    def get_task(self, torrent_id: str) -> FakeTaskHandle | None:
        return self.tasks.get(torrent_id)

    def get_tasks(self) -> list[FakeTaskHandle]:
        return list(self.tasks.values())

    def delete_torrent(self, torrent_id: str, with_files: bool) -> None:
        self._record("delete_torrent", torrent_id, with_files)
        self.tasks.pop(torrent_id, None)

    def fetch_metadata(self, magnet_uri: str) -> None:
        self._record("fetch_metadata", magnet_uri)
        self.fetches.append(magnet_uri)

    def get_cached_metadata(self, info_hash: str) -> bytes | None:
        return self.cached_metadata.get(info_hash)

    def cancel_fetch(self, info_hash: str) -> None:
        self._record("cancel_fetch", info_hash)
        self.cancelled_fetches.append(info_hash)

    def restore_torrents(self, torrents: list[Torrent]) -> None:
        self._record("restore_torrents", [t.id for t in torrents])
        for torrent in torrents:
            self.tasks[torrent.id] = FakeTaskHandle(
                torrent.id, name=torrent.name, save_path=torrent.download_path
            )
            self.publish(TaskLoadedEvent(torrent_id=torrent.id))

    def pause_all(self) -> None:
        self._record("pause_all")
        self.global_paused = True
        for task in self.tasks.values():
            task.paused = True

    def resume_all(self) -> None:
        self._record("resume_all")
        self.global_paused = False
        for task in self.tasks.values():
            task.paused = False

    def enable_ip_filter(self, path: str) -> None:
        self._record("enable_ip_filter", path)

    # Helpers driving engine-originated notifications

    def finish(self, torrent_id: str) -> None:
        self.tasks[torrent_id].finished = True
        self.publish(TaskFinishedEvent(torrent_id=torrent_id))

    def deliver_metadata(
        self,
        info_hash: str,
        metadata: bytes | None = None,
        error: str | None = None,
    ) -> None:
        self.publish(MetadataLoadedEvent(torrent_id=info_hash, metadata=metadata, error=error))


class StaticEnvironmentProbe:
    """Environment probe returning mutable canned readings."""

    def __init__(self, readings: EnvironmentReadings | None = None) -> None:
        self.readings = readings or EnvironmentReadings()

    def read(self) -> EnvironmentReadings:
        return self.readings


@pytest.fixture
def torrent_bytes() -> Callable[..., bytes]:
    """Factory building bencoded torrents."""
    return make_torrent_bytes


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def store() -> InMemoryTorrentStore:
    return InMemoryTorrentStore()


@pytest.fixture
def environment() -> StaticEnvironmentProbe:
    return StaticEnvironmentProbe()


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        storage=StorageConfig(
            download_dir=str(tmp_path / "downloads"),
            temp_dir=str(tmp_path / "tmp"),
        )
    )


async def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            msg = "Condition not met within timeout"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Async helper polling a predicate until it holds."""
    return _wait_until


@pytest.fixture
def make_controller(engine, store, config, environment):
    """Factory for controllers wired to the fakes."""
    from swarmctl.session.controller import SessionController

    def _make(**overrides: Any) -> SessionController:
        kwargs: dict[str, Any] = {"environment": environment}
        kwargs.update(overrides)
        return SessionController(
            kwargs.pop("engine", engine),
            kwargs.pop("store", store),
            kwargs.pop("config", config),
            **kwargs,
        )

    return _make


@pytest_asyncio.fixture
async def controller(make_controller):
    """Controller over the fakes; stopped at teardown if still running."""
    ctrl = make_controller()
    yield ctrl
    if ctrl.is_running():
        await ctrl.stop()
    ctrl.dispatcher.stop(timeout=1.0)


async def _drain(ctrl) -> None:
    """Wait for the post-start sequence and everything it queued."""
    await _wait_until(lambda: len(ctrl.tasks) == 0)
    # Units submitted by listeners while earlier units ran land behind the
    # first barrier, so run two.
    await ctrl.dispatcher.run(lambda: None)
    await ctrl.dispatcher.run(lambda: None)


@pytest.fixture
def drain() -> Callable[..., Any]:
    """Async helper flushing the controller's dispatcher."""
    return _drain


@pytest_asyncio.fixture
async def running_controller(controller):
    """Controller that has started and restored its torrents."""
    await controller.start()
    await _wait_until(controller.is_running)
    await _drain(controller)
    return controller
