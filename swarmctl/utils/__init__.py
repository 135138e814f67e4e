"""Shared utilities and infrastructure.

Exceptions and logging used throughout the package.
"""

from __future__ import annotations

from swarmctl.utils.exceptions import (
    ConfigurationError,
    DecodeError,
    EngineUnavailableError,
    InsufficientSpaceError,
    SwarmCtlError,
    TorrentAlreadyExistsError,
    UnknownSourceError,
)
from swarmctl.utils.logging_config import get_logger, setup_logging

__all__ = [
    "ConfigurationError",
    "DecodeError",
    "EngineUnavailableError",
    "InsufficientSpaceError",
    "SwarmCtlError",
    "TorrentAlreadyExistsError",
    "UnknownSourceError",
    "get_logger",
    "setup_logging",
]
