"""
Logging configuration for digislide.

Usage:
    from digislide.utils.logging import get_logger, setup_logging

    logger = get_logger(__name__)

    # Once, at application start (the CLI does this)
    setup_logging(level="INFO", log_dir="/path/to/output")

    logger.info("Reading level %d", level)
"""

import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


class ColoredFormatter(logging.Formatter):
    """Formatter that colours the level name for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        if record.levelname in self.COLORS:
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_handlers: list = []


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    console: bool = True,
    colored: bool = True,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the ``digislide`` logger hierarchy.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Explicit path to a log file
        log_dir: Directory for an auto-named, timestamped log file
        console: Log to stdout
        colored: Colour level names when stdout is a terminal
        format_string: Custom format string

    Returns:
        The package logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    fmt = format_string or DEFAULT_FORMAT

    package_logger = logging.getLogger("digislide")
    package_logger.setLevel(level)
    for handler in _handlers:
        package_logger.removeHandler(handler)
        handler.close()
    _handlers.clear()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        if colored and sys.stdout.isatty():
            console_handler.setFormatter(ColoredFormatter(fmt))
        else:
            console_handler.setFormatter(logging.Formatter(fmt))
        package_logger.addHandler(console_handler)
        _handlers.append(console_handler)

    if log_file or log_dir:
        if log_file:
            log_path = Path(log_file)
        else:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = Path(log_dir) / f"digislide_{timestamp}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(fmt))
        package_logger.addHandler(file_handler)
        _handlers.append(file_handler)
        package_logger.info("Logging to file: %s", log_path)

    return package_logger


def log_parameters(logger: logging.Logger, params: dict, title: str = "Parameters") -> None:
    """Log a dictionary of parameters as an indented block."""
    logger.info(title)
    for key, value in params.items():
        if isinstance(value, (list, tuple)) and len(value) > 5:
            logger.info("  %s: [%d items]", key, len(value))
        else:
            logger.info("  %s: %s", key, value)


def _format_duration(seconds: float) -> str:
    if seconds >= 3600:
        return f"{seconds / 3600:.1f} hours"
    if seconds >= 60:
        return f"{seconds / 60:.1f} minutes"
    return f"{seconds:.1f} seconds"


class ProcessingTimer:
    """Context manager that logs the start, end and duration of an operation.

    Exceptions are logged and re-raised.
    """

    def __init__(self, logger: logging.Logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info("Starting: %s", self.operation)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.logger.error("Failed: %s after %.1fs - %s", self.operation, self.duration, exc_val)
        else:
            self.logger.info("Completed: %s in %s", self.operation,
                             _format_duration(self.duration))
        return False
