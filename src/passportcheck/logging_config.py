"""Logging setup shared by all pipeline modules.

Format: 2025-11-04 15:30:45 | INFO | passportcheck.app.pipeline | Message
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Formatter with colored level names (terminal only)."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(sys.stdout, "isatty") and sys.stdout.isatty():
            record = logging.makeLogRecord(record.__dict__)
            color = self.COLORS.get(record.levelname)
            if color:
                record.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    name: str = "passportcheck",
    level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Setup and configure a logger with consistent formatting.

    Args:
        name: Logger name (usually the module name)
        level: Log level name. If None, read from the environment via Config.
        log_file: Optional file path to also log to a file.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(name)

    # Already configured
    if logger.handlers:
        return logger

    if level is None:
        try:
            from passportcheck.config import get_config

            level = get_config().log_level
        except ValueError:
            level = "INFO"

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logger.level)
    console_handler.setFormatter(ColoredFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logger.level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    # Prevent duplicate messages through the root logger
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get logger for a specific module (typically __name__)."""
    return setup_logging(name)
