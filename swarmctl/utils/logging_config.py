"""Structured logging configuration for swarmctl.

Provides logging setup with correlation IDs, structured output,
and configurable log levels.
"""

from __future__ import annotations

import json
import logging
import logging.config
import random
import string
import time
import uuid
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from swarmctl.utils.exceptions import SwarmCtlError
from swarmctl.utils.rich_logging import FileFormatter, create_rich_handler

if TYPE_CHECKING:  # pragma: no cover
    from swarmctl.models import ObservabilityConfig

correlation_id: ContextVar[str | None] = cast(
    "ContextVar[str | None]",
    ContextVar("correlation_id", default=None),
)

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "correlation_id",
    }
)


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = correlation_id.get() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_KEYS
            }
        )
        return json.dumps(log_entry, default=str)


def _generate_timestamped_log_filename(base_path: str) -> str:
    """Generate a unique timestamped log file name.

    Format: swarmctl-YYYYMMDD-HHMMSS-<random>.log
    """
    base_path_obj = Path(base_path).expanduser()
    base_dir = base_path_obj if base_path_obj.is_dir() else base_path_obj.parent
    base_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return str(base_dir / f"swarmctl-{timestamp}-{suffix}.log")


def setup_logging(config: ObservabilityConfig) -> None:
    """Set up logging for the ``swarmctl`` logger tree.

    Console output goes through a Rich handler unless structured logging is
    requested, in which case JSON lines are written to stdout. When
    ``log_file`` is set, a rotating file handler writes to a timestamped
    file next to it.
    """
    level = config.log_level.value if hasattr(config.log_level, "value") else str(
        config.log_level
    )

    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {"()": StructuredFormatter},
            "simple": {
                "()": FileFormatter,
                "format": "%(asctime)s %(levelname)s %(correlation_id)s %(name)s.%(funcName)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {"correlation": {"()": CorrelationFilter}},
        "handlers": {},
        "loggers": {
            "swarmctl": {"level": level, "handlers": [], "propagate": False},
        },
    }

    if config.structured_logging:
        logging_config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "structured",
            "filters": ["correlation"],
            "stream": "ext://sys.stdout",
        }
        logging_config["loggers"]["swarmctl"]["handlers"].append("console")

    if config.log_file:
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured" if config.structured_logging else "simple",
            "filters": ["correlation"],
            "filename": _generate_timestamped_log_filename(config.log_file),
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
        }
        logging_config["loggers"]["swarmctl"]["handlers"].append("file")

    logging.config.dictConfig(logging_config)

    if not config.structured_logging:
        rich_handler = create_rich_handler(level=level)
        rich_handler.addFilter(CorrelationFilter())
        logging.getLogger("swarmctl").addHandler(rich_handler)

    if config.log_correlation_id:
        correlation_id.set(str(uuid.uuid4()))


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Module names already under the package (``swarmctl.session.controller``)
    are used as-is; anything else is nested under ``swarmctl``.
    """
    if name == "swarmctl" or name.startswith("swarmctl."):
        return logging.getLogger(name)
    return logging.getLogger(f"swarmctl.{name}")


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set correlation ID for the current context."""
    if corr_id is None:
        corr_id = str(uuid.uuid4())
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id.get()


class LoggingContext:
    """Context manager that logs the start, duration and failure of an operation."""

    INFO_OPERATIONS = frozenset(
        {
            "session_start",
            "session_stop",
            "torrent_add",
            "torrent_delete",
            "restore_torrents",
            "watch_dir_scan",
        }
    )

    def __init__(
        self,
        operation: str,
        log_level: int | None = None,
        slow_threshold: float = 1.0,
        expected: tuple[type[BaseException], ...] = (),
        **kwargs: Any,
    ):
        """Initialize operation context manager.

        Args:
            operation: Name of the operation
            log_level: Logging level (default: INFO for lifecycle operations,
                DEBUG otherwise, promoted to INFO when slow)
            slow_threshold: Duration in seconds above which to log at INFO level
            expected: Exception types raised in normal operation, logged at
                DEBUG without a traceback
            **kwargs: Additional context to include in logs

        """
        self.operation = operation
        self.kwargs = kwargs
        self.logger = get_logger(__name__)
        self.start_time: float | None = None
        self.log_level = log_level
        self.slow_threshold = slow_threshold
        self.expected = expected

    def _level(self, duration: float = 0.0) -> int:
        if self.log_level is not None:
            return self.log_level
        if self.operation in self.INFO_OPERATIONS or duration >= self.slow_threshold:
            return logging.INFO
        return logging.DEBUG

    def __enter__(self):
        """Enter the context manager."""
        self.start_time = time.time()
        set_correlation_id()
        self.logger.log(self._level(), "Starting %s", self.operation, extra=self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the context manager."""
        duration = time.time() - self.start_time if self.start_time else 0.0

        if exc_type is None:
            self.logger.log(
                self._level(duration),
                "Completed %s in %.3fs",
                self.operation,
                duration,
                extra=self.kwargs,
            )
        elif self.expected and issubclass(exc_type, self.expected):
            self.logger.debug(
                "%s ended early: %s", self.operation, exc_val, extra=self.kwargs
            )
        else:
            self.logger.error(
                "Failed %s in %.3fs: %s",
                self.operation,
                duration,
                exc_val,
                extra=self.kwargs,
                exc_info=exc_val is not None,
            )

        return False


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log an exception with context."""
    if isinstance(exc, SwarmCtlError):
        logger.error(
            "%s: %s",
            context,
            exc.message,
            extra={"details": exc.details},
            exc_info=exc,
        )
    else:
        logger.error("%s: %s", context, exc, exc_info=exc)
