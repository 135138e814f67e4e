"""Exception hierarchy for swarmctl.

Every failure raised by the orchestration layer derives from
:class:`SwarmCtlError` so callers can catch the whole family at once while
still telling the add/resolve failure kinds apart.
"""

from __future__ import annotations

from typing import Any


class SwarmCtlError(Exception):
    """Base exception for all swarmctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize swarmctl error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class TorrentError(SwarmCtlError):
    """Errors raised while adding or resolving a torrent."""


class TorrentAlreadyExistsError(TorrentError):
    """A torrent with the same info hash is already tracked.

    Non-fatal: the directory watcher treats it as a successful ingestion.
    """

    def __init__(self, info_hash: str, details: dict[str, Any] | None = None):
        super().__init__(f"Torrent {info_hash} already exists", details)
        self.info_hash = info_hash


class DecodeError(TorrentError):
    """Malformed descriptor bytes."""


class InsufficientSpaceError(TorrentError):
    """Destination directory lacks room for the torrent payload."""

    def __init__(
        self,
        path: str,
        required: int,
        available: int,
    ):
        super().__init__(
            f"Not enough free space in {path}",
            {"required": required, "available": available},
        )
        self.path = path
        self.required = required
        self.available = available


class UnknownSourceError(TorrentError):
    """Locator scheme not understood."""


class EngineUnavailableError(SwarmCtlError):
    """Operation attempted while the session is not running."""


class ListenerError(SwarmCtlError):
    """A bus callback failed. Logged, never propagated to publishers."""


class DispatcherError(SwarmCtlError):
    """Task dispatcher misuse (submitting to a stopped worker)."""


class ValidationError(SwarmCtlError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""
