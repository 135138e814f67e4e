"""Pydantic models for swarmctl configuration.

Provides validated configuration models for the session controller and its
collaborators.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

# Port range the engine picks from when random_port is enabled.
DEFAULT_PORT_RANGE_FIRST = 6881
DEFAULT_PORT_RANGE_SECOND = 6891
RANDOM_PORT_RANGE_MIN = 37000
RANDOM_PORT_RANGE_MAX = 57000
RANDOM_PORT_RANGE_SPAN = 10


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EncryptionMode(str, Enum):
    """Peer connection encryption modes."""

    DISABLED = "disabled"
    ENABLED = "enabled"
    FORCED = "forced"


class ProxyType(str, Enum):
    """Proxy protocol types."""

    NONE = "none"
    HTTP = "http"
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"


class ProxySettings(BaseModel):
    """Proxy configuration pushed into the engine."""

    proxy_type: ProxyType = Field(default=ProxyType.NONE, description="Proxy type")
    host: str | None = Field(default=None, description="Proxy server hostname or IP")
    port: int = Field(default=8080, ge=1, le=65535, description="Proxy server port")
    username: str | None = Field(default=None, description="Proxy username")
    password: str | None = Field(default=None, description="Proxy password")
    proxy_peers_too: bool = Field(
        default=True,
        description="Route peer connections through the proxy as well",
    )

    @model_validator(mode="after")
    def validate_proxy(self) -> ProxySettings:
        """Require a host whenever a proxy type is selected."""
        if self.proxy_type != ProxyType.NONE and not self.host:
            msg = "host is required when proxy_type is set"
            raise ValueError(msg)
        return self


class SessionSettings(BaseModel):
    """Process-wide settings snapshot pushed into the transfer engine."""

    encryption_mode: EncryptionMode = Field(
        default=EncryptionMode.ENABLED,
        description="Peer connection encryption mode",
    )
    port_range_first: int = Field(
        default=DEFAULT_PORT_RANGE_FIRST,
        ge=0,
        le=65535,
        description="First port of the listen range",
    )
    port_range_second: int = Field(
        default=DEFAULT_PORT_RANGE_SECOND,
        ge=0,
        le=65535,
        description="Last port of the listen range",
    )
    random_port: bool = Field(
        default=False,
        description="Pick a random listen port range on every start",
    )
    proxy: ProxySettings = Field(
        default_factory=ProxySettings,
        description="Proxy configuration",
    )
    ip_filter_enabled: bool = Field(default=False, description="Enable IP filtering")
    ip_filter_path: str | None = Field(
        default=None,
        description="Path to the IP filter file (PeerGuardian/DAT format)",
    )
    download_rate_limit: int = Field(
        default=0,
        ge=0,
        description="Global download limit in bytes per second (0 = unlimited)",
    )
    upload_rate_limit: int = Field(
        default=0,
        ge=0,
        description="Global upload limit in bytes per second (0 = unlimited)",
    )

    @model_validator(mode="after")
    def validate_port_range(self) -> SessionSettings:
        """Validate that the listen range is ordered."""
        if self.port_range_first > self.port_range_second:
            msg = (
                f"port_range_first ({self.port_range_first}) must not exceed "
                f"port_range_second ({self.port_range_second})"
            )
            raise ValueError(msg)
        return self


class PolicyConfig(BaseModel):
    """Power and network policy deciding when all transfers pause."""

    battery_control: bool = Field(
        default=False,
        description="Pause when the battery is at or below the platform low level",
    )
    custom_battery_control: bool = Field(
        default=False,
        description="Pause when the battery is at or below custom_battery_threshold",
    )
    custom_battery_threshold: int = Field(
        default=15,
        ge=0,
        le=100,
        description="Custom battery threshold in percent",
    )
    only_charging: bool = Field(
        default=False,
        description="Only transfer while the device is charging",
    )
    unmetered_only: bool = Field(
        default=False,
        description="Only transfer over unmetered connections",
    )
    respect_roaming: bool = Field(
        default=False,
        description="Pause while the connection is roaming",
    )
    is_metered: bool = Field(
        default=False,
        description="Whether the current connection is metered (host-reported)",
    )
    is_roaming: bool = Field(
        default=False,
        description="Whether the current connection is roaming (host-reported)",
    )


class WatchDirConfig(BaseModel):
    """Directory ingestion configuration."""

    enabled: bool = Field(default=False, description="Watch a directory for new torrents")
    path: str | None = Field(default=None, description="Directory to watch")
    suffix: str = Field(default=".torrent", description="File suffix to ingest")
    delete_after_add: bool = Field(
        default=True,
        description="Delete the source file after a successful add",
    )
    recursive: bool = Field(default=False, description="Watch subdirectories too")

    @field_validator("suffix")
    @classmethod
    def validate_suffix(cls, v: str) -> str:
        """Normalize suffix to start with a dot."""
        v = v.strip().lower()
        if not v:
            msg = "suffix must not be empty"
            raise ValueError(msg)
        return v if v.startswith(".") else f".{v}"


class StreamingConfig(BaseModel):
    """HTTP streaming endpoint configuration."""

    enabled: bool = Field(default=False, description="Serve task files over HTTP")
    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8800, ge=1, le=65535, description="Bind port")


class StorageConfig(BaseModel):
    """Download locations and temporary storage."""

    download_dir: str = Field(
        default="~/Downloads",
        description="Default download directory for new torrents",
    )
    temp_dir: str = Field(
        default="~/.swarmctl/tmp",
        description="Temporary directory cleaned on stop",
    )
    move_after_download: bool = Field(
        default=False,
        description="Move finished torrents to move_after_download_in",
    )
    move_after_download_in: str | None = Field(
        default=None,
        description="Destination for finished torrents",
    )
    save_torrents_in: str | None = Field(
        default=None,
        description="Directory for saved .torrent copies",
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(default=None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log lines instead of Rich console output",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class ControllerConfig(BaseModel):
    """Session controller timing and behaviour."""

    shutdown_timeout: float = Field(
        default=10.0,
        ge=0.1,
        le=300.0,
        description="Seconds to wait for in-flight engine calls on stop",
    )
    needs_start_interval: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Poll interval in seconds for the needs-start signal",
    )
    auto_stop_when_complete: bool = Field(
        default=False,
        description="Stop the session once every torrent has finished",
    )
    default_low_battery_level: int = Field(
        default=15,
        ge=0,
        le=100,
        description="Platform low-battery level used by battery_control",
    )


class Config(BaseModel):
    """Main configuration model."""

    session: SessionSettings = Field(
        default_factory=SessionSettings,
        description="Engine session settings",
    )
    policy: PolicyConfig = Field(
        default_factory=PolicyConfig,
        description="Power and network policy",
    )
    watch_dir: WatchDirConfig = Field(
        default_factory=WatchDirConfig,
        description="Directory ingestion",
    )
    streaming: StreamingConfig = Field(
        default_factory=StreamingConfig,
        description="Streaming endpoint",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Storage locations",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Logging configuration",
    )
    controller: ControllerConfig = Field(
        default_factory=ControllerConfig,
        description="Session controller configuration",
    )

    @model_validator(mode="after")
    def validate_config(self) -> Config:
        """Validate cross-section consistency."""
        if self.watch_dir.enabled and not self.watch_dir.path:
            msg = "watch_dir.path is required when watch_dir.enabled is True"
            raise ValueError(msg)
        if self.storage.move_after_download and not self.storage.move_after_download_in:
            msg = (
                "storage.move_after_download_in is required when "
                "storage.move_after_download is True"
            )
            raise ValueError(msg)
        return self
