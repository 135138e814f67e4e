"""Storage components.

Local filesystem facade, in-memory torrent store and watch-dir ingestion.
"""

from __future__ import annotations

from swarmctl.storage.folder_watcher import DirectoryWatcher
from swarmctl.storage.fs import LocalFileSystem
from swarmctl.storage.torrent_store import InMemoryTorrentStore

__all__ = ["DirectoryWatcher", "InMemoryTorrentStore", "LocalFileSystem"]
