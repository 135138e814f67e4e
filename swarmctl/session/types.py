"""Contracts for the collaborators the session controller drives.

The transfer engine implements the BitTorrent protocol itself; swarmctl only
orchestrates it through these protocols. Engine calls are synchronous and
may be slow; the controller routes every mutating call through the task
dispatcher's worker thread. Read accessors must be thread-safe.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover
    from swarmctl.core.policy import EnvironmentReadings
    from swarmctl.events import ListenerBus
    from swarmctl.models import SessionSettings
    from swarmctl.session.models import (
        AddTorrentParams,
        Priority,
        TaskStatus,
        Torrent,
    )


@runtime_checkable
class TaskHandleProtocol(Protocol):
    """Engine handle for a single torrent."""

    @property
    def id(self) -> str: ...

    def is_valid(self) -> bool: ...

    def status(self) -> TaskStatus: ...

    def is_paused(self) -> bool: ...

    def is_finished(self) -> bool: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def force_recheck(self) -> None: ...

    def force_announce(self) -> None: ...

    def get_trackers(self) -> list[str]: ...

    def add_trackers(self, urls: list[str]) -> None: ...

    def replace_trackers(self, urls: list[str]) -> None: ...

    def set_name(self, name: str) -> None: ...

    def move_storage(self, path: str) -> None: ...

    def save_path(self) -> str: ...

    def set_sequential_download(self, enabled: bool) -> None: ...

    def is_sequential_download(self) -> bool: ...

    def set_first_last_piece_priority(self, enabled: bool) -> None: ...

    def is_first_last_piece_priority(self) -> bool: ...

    def set_file_priorities(self, priorities: list[Priority]) -> None: ...

    def file_priorities(self) -> list[Priority]: ...

    def set_download_limit(self, limit: int) -> None: ...

    def download_limit(self) -> int: ...

    def set_upload_limit(self, limit: int) -> None: ...

    def upload_limit(self) -> int: ...

    def make_magnet(self, include_priorities: bool = False) -> str: ...

    def metadata(self) -> bytes | None: ...

    def file_paths(self) -> list[str]: ...

    def pieces(self) -> list[bool]: ...


@runtime_checkable
class TransferEngineProtocol(Protocol):
    """Black-box transfer engine.

    Engine-originated notifications are delivered by publishing on the bus
    given to :meth:`attach`.
    """

    def attach(self, bus: ListenerBus) -> None: ...

    def detach(self) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def is_running(self) -> bool: ...

    def apply_settings(self, settings: SessionSettings) -> None: ...

    def get_settings(self) -> SessionSettings: ...

    def add_torrent(self, params: AddTorrentParams) -> str: ...

    def get_task(self, torrent_id: str) -> TaskHandleProtocol | None: ...

    def get_tasks(self) -> list[TaskHandleProtocol]: ...

    def delete_torrent(self, torrent_id: str, with_files: bool) -> None: ...

    def fetch_metadata(self, magnet_uri: str) -> None: ...

    def get_cached_metadata(self, info_hash: str) -> bytes | None: ...

    def cancel_fetch(self, info_hash: str) -> None: ...

    def restore_torrents(self, torrents: list[Torrent]) -> None: ...

    def pause_all(self) -> None: ...

    def resume_all(self) -> None: ...

    def enable_ip_filter(self, path: str) -> None: ...


@runtime_checkable
class TorrentStoreProtocol(Protocol):
    """Persistent store of torrent records."""

    def add(self, torrent: Torrent) -> None: ...

    def update(self, torrent: Torrent) -> None: ...

    def delete(self, torrent_id: str) -> None: ...

    def get_torrent_by_id(self, torrent_id: str) -> Torrent | None: ...

    def get_all_torrents(self) -> list[Torrent]: ...

    def observe_torrent_by_id(
        self,
        torrent_id: str,
        callback: Callable[[Torrent | None], None],
    ) -> Callable[[], None]: ...


@runtime_checkable
class FileSystemProtocol(Protocol):
    """Locator-based file access used by add, watch-dir and cleanup paths."""

    def is_local(self, locator: str) -> bool: ...

    def to_path(self, locator: str) -> Path: ...

    def exists(self, locator: str) -> bool: ...

    def read_bytes(self, locator: str) -> bytes: ...

    def write_bytes(self, locator: str, data: bytes) -> None: ...

    def create_file(self, directory: str, name: str) -> Path: ...

    def delete(self, locator: str) -> bool: ...

    def list_files(self, directory: str, suffix: str) -> list[Path]: ...

    def get_dir_available_bytes(self, directory: str) -> int: ...

    def default_download_path(self) -> str: ...

    def clean_temp_dir(self) -> None: ...


@runtime_checkable
class StreamingEndpointProtocol(Protocol):
    async def start(self, host: str, port: int) -> None: ...

    async def stop(self) -> None: ...

    def build_url(self, host: str, port: int, torrent_id: str, file_index: int) -> str: ...


@runtime_checkable
class EnvironmentProbeProtocol(Protocol):
    def read(self) -> EnvironmentReadings: ...
