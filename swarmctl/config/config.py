"""Configuration management for swarmctl.

Provides centralized configuration with TOML support, validation, hot-reload,
and hierarchical loading from defaults → config file → environment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable

import toml

from swarmctl.models import Config
from swarmctl.utils.exceptions import ConfigurationError
from swarmctl.utils.logging_config import get_logger, setup_logging

ConfigChangeCallback = Callable[[Config], None]

_ENV_MAPPINGS: dict[str, str] = {
    # Session
    "SWARMCTL_ENCRYPTION_MODE": "session.encryption_mode",
    "SWARMCTL_PORT_RANGE_FIRST": "session.port_range_first",
    "SWARMCTL_PORT_RANGE_SECOND": "session.port_range_second",
    "SWARMCTL_RANDOM_PORT": "session.random_port",
    "SWARMCTL_IP_FILTER_ENABLED": "session.ip_filter_enabled",
    "SWARMCTL_IP_FILTER_PATH": "session.ip_filter_path",
    "SWARMCTL_DOWNLOAD_RATE_LIMIT": "session.download_rate_limit",
    "SWARMCTL_UPLOAD_RATE_LIMIT": "session.upload_rate_limit",
    "SWARMCTL_PROXY_TYPE": "session.proxy.proxy_type",
    "SWARMCTL_PROXY_HOST": "session.proxy.host",
    "SWARMCTL_PROXY_PORT": "session.proxy.port",
    "SWARMCTL_PROXY_USERNAME": "session.proxy.username",
    "SWARMCTL_PROXY_PASSWORD": "session.proxy.password",
    # Policy
    "SWARMCTL_BATTERY_CONTROL": "policy.battery_control",
    "SWARMCTL_CUSTOM_BATTERY_CONTROL": "policy.custom_battery_control",
    "SWARMCTL_CUSTOM_BATTERY_THRESHOLD": "policy.custom_battery_threshold",
    "SWARMCTL_ONLY_CHARGING": "policy.only_charging",
    "SWARMCTL_UNMETERED_ONLY": "policy.unmetered_only",
    "SWARMCTL_RESPECT_ROAMING": "policy.respect_roaming",
    "SWARMCTL_IS_METERED": "policy.is_metered",
    "SWARMCTL_IS_ROAMING": "policy.is_roaming",
    # Watch dir
    "SWARMCTL_WATCH_DIR_ENABLED": "watch_dir.enabled",
    "SWARMCTL_WATCH_DIR": "watch_dir.path",
    "SWARMCTL_WATCH_DIR_DELETE_AFTER_ADD": "watch_dir.delete_after_add",
    # Streaming
    "SWARMCTL_STREAMING_ENABLED": "streaming.enabled",
    "SWARMCTL_STREAMING_HOST": "streaming.host",
    "SWARMCTL_STREAMING_PORT": "streaming.port",
    # Storage
    "SWARMCTL_DOWNLOAD_DIR": "storage.download_dir",
    "SWARMCTL_TEMP_DIR": "storage.temp_dir",
    "SWARMCTL_MOVE_AFTER_DOWNLOAD": "storage.move_after_download",
    "SWARMCTL_MOVE_AFTER_DOWNLOAD_IN": "storage.move_after_download_in",
    "SWARMCTL_SAVE_TORRENTS_IN": "storage.save_torrents_in",
    # Observability
    "SWARMCTL_LOG_LEVEL": "observability.log_level",
    "SWARMCTL_LOG_FILE": "observability.log_file",
    "SWARMCTL_STRUCTURED_LOGGING": "observability.structured_logging",
    "SWARMCTL_LOG_CORRELATION_ID": "observability.log_correlation_id",
    # Controller
    "SWARMCTL_SHUTDOWN_TIMEOUT": "controller.shutdown_timeout",
    "SWARMCTL_NEEDS_START_INTERVAL": "controller.needs_start_interval",
    "SWARMCTL_AUTO_STOP_WHEN_COMPLETE": "controller.auto_stop_when_complete",
}

# Values that must stay strings even when they look numeric.
_STRING_PATHS = frozenset(
    {
        "session.ip_filter_path",
        "session.proxy.host",
        "session.proxy.username",
        "session.proxy.password",
        "watch_dir.path",
        "storage.download_dir",
        "storage.temp_dir",
        "storage.move_after_download_in",
        "storage.save_torrents_in",
        "observability.log_file",
    }
)

_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
    if path in _STRING_PATHS:
        return raw

    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Manages configuration loading, validation, and hot-reload."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        configure_logging: bool = True,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for swarmctl.toml
            configure_logging: Apply the observability section to logging

        """
        self._hot_reload_task: asyncio.Task | None = None
        self._last_mtime: float | None = None
        self._change_callbacks: list[ConfigChangeCallback] = []
        self._configure_logging = configure_logging
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._setup_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / "swarmctl.toml",
            Path.home() / ".config" / "swarmctl" / "swarmctl.toml",
            Path.home() / ".swarmctl.toml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                logging.warning(
                    "Failed to load config file %s: %s", self.config_file, e
                )

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in _ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _setup_logging(self) -> None:
        """Set up logging based on configuration."""
        if self._configure_logging:
            setup_logging(self.config.observability)

    def add_change_callback(self, callback: ConfigChangeCallback) -> None:
        """Register a callback invoked with the new config after every change."""
        self._change_callbacks.append(callback)

    def remove_change_callback(self, callback: ConfigChangeCallback) -> None:
        """Remove a previously registered change callback."""
        if callback in self._change_callbacks:
            self._change_callbacks.remove(callback)

    def apply(self, new_config: Config) -> None:
        """Replace the active configuration and notify change callbacks."""
        self.config = new_config
        self._setup_logging()
        logger = get_logger(__name__)
        for callback in list(self._change_callbacks):
            try:
                callback(new_config)
            except Exception:
                logger.exception("Config change callback %r failed", callback)

    def reload(self) -> Config:
        """Reload configuration from file and environment."""
        self.apply(self._load_config())
        return self.config

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string in the given format.

        Args:
            fmt: one of "toml" or "json"

        """
        data = self.config.model_dump(mode="json", exclude_none=True)

        fmt = (fmt or "toml").lower()
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        msg = f"Unsupported export format: {fmt}"
        raise ConfigurationError(msg)

    async def start_hot_reload(self, interval: float = 1.0) -> None:
        """Poll the config file mtime and reload on change until cancelled."""
        if not self.config_file:
            return

        logger = get_logger(__name__)
        logger.info("Starting configuration hot-reload monitoring")
        self._hot_reload_task = asyncio.current_task()

        while await self._hot_reload_loop_step(logger, interval):
            pass

    async def _hot_reload_loop_step(
        self,
        logger: logging.Logger,
        interval: float,
    ) -> bool:
        """Execute a single hot-reload step. Return False to stop the loop."""
        try:
            if self.config_file is not None and self.config_file.exists():
                current_mtime = self.config_file.stat().st_mtime
                if self._last_mtime is not None and current_mtime > self._last_mtime:
                    logger.info("Configuration file changed, reloading...")
                    try:
                        self.reload()
                        logger.info("Configuration reloaded successfully")
                    except ConfigurationError:
                        logger.exception("Keeping previous configuration")
                self._last_mtime = current_mtime

            await asyncio.sleep(interval)
            return True
        except asyncio.CancelledError:
            return False

    def stop_hot_reload(self) -> None:
        """Stop hot-reload monitoring."""
        if self._hot_reload_task:
            self._hot_reload_task.cancel()
            self._hot_reload_task = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def get_config_manager() -> ConfigManager:
    """Get the global configuration manager, creating it on first use."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def reload_config() -> Config:
    """Reload configuration from file."""
    if _config_manager is None:
        msg = "Configuration not initialized"
        raise ConfigurationError(msg)
    return _config_manager.reload()


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Reconfigures logging and notifies change callbacks; the session
    controller re-pushes session settings into the engine from there.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.apply(new_config)
