"""Rich logging integration for swarmctl.

Provides the Rich console handler used by :func:`setup_logging` and the
plain-text formatter used for log files.
"""

from __future__ import annotations

import copy
import logging
import re
import sys
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

# [red], [bold], [#ff69b4], [/red]
_MARKUP_PATTERN = re.compile(r"\[/?[^\]]+\]")


class CorrelationRichHandler(RichHandler):
    """RichHandler with correlation ID support.

    Session state transitions and event categories (``SESSION_STARTED``,
    ``METADATA_LOADED``) are highlighted so lifecycle logs stand out in
    the console.
    """

    ACTION_PATTERNS = [
        r"Session state: \w+ -> \w+",
        r"Dispatcher: [a-z_]+",
        r"Watch dir:",
    ]

    def __init__(
        self,
        *args: Any,
        console: Console | None = None,
        show_colors: bool = True,
        **kwargs: Any,
    ) -> None:
        """Initialize handler.

        Args:
            *args: Positional arguments for RichHandler
            console: Optional Rich Console instance
            show_colors: Whether to colorize action text
            **kwargs: Keyword arguments for RichHandler

        """
        if console is None:
            console = Console(file=sys.stdout, markup=True, color_system="auto")
        self.show_colors = show_colors
        kwargs.setdefault("markup", True)
        super().__init__(*args, console=console, **kwargs)

    def _colorize_action_text(self, message: str) -> str:
        """Wrap action text and ALL_CAPS event names in Rich markup."""
        for pattern in self.ACTION_PATTERNS:
            for match in reversed(list(re.finditer(pattern, message))):
                start, end = match.span()
                message = (
                    message[:start]
                    + f"[bright_cyan]{message[start:end]}[/bright_cyan]"
                    + message[end:]
                )

        for match in reversed(list(re.finditer(r"\b[A-Z][A-Z_]*[A-Z]\b", message))):
            start, end = match.span()
            if message[max(0, start - 1) : start] == "[":
                continue
            message = (
                message[:start]
                + f"[orange1]{message[start:end]}[/orange1]"
                + message[end:]
            )
        return message

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record with correlation ID and colorized text."""
        try:
            if not hasattr(record, "correlation_id"):
                from swarmctl.utils.logging_config import correlation_id

                record.correlation_id = correlation_id.get() or "no-correlation-id"

            if self.show_colors:
                # Other handlers share the record; colorize a copy.
                # User text is escaped so brackets in paths or tracker URLs
                # are not parsed as markup.
                colored = copy.copy(record)
                message = record.getMessage().replace("[", r"\[")
                colored.msg = self._colorize_action_text(message)
                colored.args = ()
                super().emit(colored)
                return

            super().emit(record)
        except Exception:
            self.handleError(record)

    def handleError(self, record: logging.LogRecord) -> None:
        """Write formatting failures to stderr instead of re-entering logging."""
        try:
            sys.stderr.write(
                f"Logging error: {record.levelname} {record.name}: {record.msg}\n"
            )
            sys.stderr.flush()
        except OSError:
            pass


def strip_rich_markup(text: str) -> str:
    """Strip Rich markup from text for file logging."""
    return _MARKUP_PATTERN.sub("", text)


class FileFormatter(logging.Formatter):
    """Formatter for file output that strips Rich markup."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record, stripping Rich markup for file output."""
        return strip_rich_markup(super().format(record))


def create_rich_handler(
    console: Console | None = None,
    level: int | str = logging.INFO,
    show_path: bool = False,
    rich_tracebacks: bool = True,
    show_colors: bool = True,
) -> logging.Handler:
    """Create a RichHandler with correlation ID support.

    Args:
        console: Optional Rich Console instance
        level: Log level
        show_path: Whether to show file paths in log output
        rich_tracebacks: Whether to use rich tracebacks
        show_colors: Whether to colorize action text

    Returns:
        Configured RichHandler instance

    """
    return CorrelationRichHandler(
        console=console,
        level=level,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
        show_colors=show_colors,
    )
