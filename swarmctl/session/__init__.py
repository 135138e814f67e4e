"""Session orchestration and lifecycle management.

This module drives the transfer engine session: lifecycle, task dispatch,
magnet resolution and the long-lived session signals.
"""

from __future__ import annotations

from swarmctl.session.models import (
    AddTorrentParams,
    Priority,
    SessionState,
    TaskState,
    TaskStatus,
    Torrent,
    TorrentInfo,
    Visibility,
)


# Lazy import to avoid circular dependencies with swarmctl.storage
def __getattr__(name):
    if name in ("SessionController", "create_controller", "get_controller"):
        from swarmctl.session import controller

        return getattr(controller, name)
    if name == "TaskDispatcher":
        from swarmctl.session.dispatcher import TaskDispatcher

        return TaskDispatcher
    if name in ("MagnetFetchCoordinator", "MetadataHandle"):
        from swarmctl.session import magnet_handling

        return getattr(magnet_handling, name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "AddTorrentParams",
    "MagnetFetchCoordinator",
    "MetadataHandle",
    "Priority",
    "SessionController",
    "SessionState",
    "TaskDispatcher",
    "TaskState",
    "TaskStatus",
    "Torrent",
    "TorrentInfo",
    "Visibility",
    "create_controller",
    "get_controller",
]
