from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum


class SessionState(str, Enum):
    """Session controller lifecycle state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Visibility(str, Enum):
    NORMAL = "normal"
    HIDDEN = "hidden"


class TaskState(str, Enum):
    """Engine-reported state of a single torrent."""

    UNKNOWN = "unknown"
    CHECKING = "checking"
    DOWNLOADING_METADATA = "downloading_metadata"
    DOWNLOADING = "downloading"
    FINISHED = "finished"
    SEEDING = "seeding"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class Priority(IntEnum):
    """Per-file download priority."""

    IGNORE = 0
    LOW = 1
    DEFAULT = 4
    TOP = 7


@dataclass(frozen=True)
class Torrent:
    """Persisted torrent record, identified by its info hash."""

    id: str
    name: str
    download_path: str
    date_added: float = field(default_factory=time.time)
    error: str | None = None
    visibility: Visibility = Visibility.NORMAL

    def with_changes(self, **changes) -> Torrent:
        return replace(self, **changes)


@dataclass
class AddTorrentParams:
    """Caller-built add request. Consumed by a single add call."""

    source: str | bytes
    from_magnet: bool = False
    info_hash: str = ""
    name: str = ""
    file_priorities: list[Priority] = field(default_factory=list)
    download_path: str | None = None
    sequential_download: bool = False
    start_after_add: bool = True
    ignore_free_space: bool = False
    first_last_piece_priority: bool = False


@dataclass(frozen=True)
class TaskStatus:
    """Live status snapshot read from an engine task handle."""

    state: TaskState = TaskState.UNKNOWN
    progress: float = 0.0
    download_rate: int = 0
    upload_rate: int = 0
    total_downloaded: int = 0
    total_uploaded: int = 0
    num_peers: int = 0
    num_seeds: int = 0
    eta: int = -1
    error: str | None = None


@dataclass(frozen=True)
class TorrentInfo:
    """Read-only view combining the stored record and live task status."""

    id: str
    name: str
    date_added: float
    state: TaskState = TaskState.UNKNOWN
    progress: float = 0.0
    download_rate: int = 0
    upload_rate: int = 0
    total_downloaded: int = 0
    total_uploaded: int = 0
    num_peers: int = 0
    num_seeds: int = 0
    eta: int = -1
    error: str | None = None
    sequential_download: bool = False
    file_priorities: tuple[Priority, ...] = ()
    download_path: str = ""

    @classmethod
    def basic(cls, torrent: Torrent) -> TorrentInfo:
        """Info for a record whose task is missing or invalid."""
        return cls(
            id=torrent.id,
            name=torrent.name,
            date_added=torrent.date_added,
            state=TaskState.STOPPED if torrent.error is None else TaskState.ERROR,
            error=torrent.error,
            download_path=torrent.download_path,
        )
