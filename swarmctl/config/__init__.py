"""Configuration management.

This module handles configuration loading, validation and hot-reload.
"""

from __future__ import annotations

from swarmctl.config.config import (
    ConfigManager,
    get_config,
    get_config_manager,
    init_config,
    reload_config,
    set_config,
)

__all__ = [
    "ConfigManager",
    "get_config",
    "get_config_manager",
    "init_config",
    "reload_config",
    "set_config",
]
