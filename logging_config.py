"""
Logging configuration with a coloured console handler.

Usage:
    from logging_config import get_logger
    logger = get_logger("transport")
    logger.info("Fetch complete", extra={"host": "github.com"})
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime

# ANSI color codes for console output
COLORS = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[35m",  # Magenta
    "RESET": "\033[0m",
}

# Module-specific colors for tags
TAG_COLORS = {
    "auth": "\033[95m",  # Magenta
    "keys": "\033[96m",  # Cyan
    "hosts": "\033[92m",  # Green
    "transport": "\033[94m",  # Blue
    "git": "\033[93m",  # Yellow
}


class ColoredConsoleFormatter(logging.Formatter):
    """Formatter that adds colors and a bracketed tag per logger."""

    def format(self, record: logging.LogRecord) -> str:
        level_color = COLORS.get(record.levelname, "")
        reset = COLORS["RESET"]

        tag = record.name
        tag_color = TAG_COLORS.get(tag, "\033[37m")

        timestamp = datetime.now().strftime("%H:%M:%S")
        level_str = f"{level_color}{record.levelname:8}{reset}"
        tag_str = f"{tag_color}[{tag}]{reset}"

        extra_parts = []
        if getattr(record, "host", None):
            extra_parts.append(f"host={record.host}")
        if getattr(record, "phase", None):
            extra_parts.append(f"phase={record.phase}")

        extra_str = f" ({', '.join(extra_parts)})" if extra_parts else ""
        msg = f"{timestamp} {level_str} {tag_str} {record.getMessage()}{extra_str}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


# Global state
_console_handler: logging.Handler | None = None
_initialized = False


def _get_console_level() -> int:
    """Get console log level from environment variable."""
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def init_logging(console_level: int | None = None):
    """Initialize the logging system with a console handler."""
    global _console_handler, _initialized

    if _initialized:
        return

    if console_level is None:
        console_level = _get_console_level()

    _console_handler = logging.StreamHandler(sys.stdout)
    _console_handler.setLevel(console_level)
    _console_handler.setFormatter(ColoredConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(_console_handler)

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    if not _initialized:
        init_logging()
    return logging.getLogger(name)


def shutdown_logging():
    """Detach the console handler."""
    global _console_handler, _initialized
    if _console_handler:
        logging.getLogger().removeHandler(_console_handler)
        _console_handler = None
    _initialized = False
