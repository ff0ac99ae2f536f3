"""Logging configuration for the position engine.

Every module logs through the shared loguru ``logger`` exported here.
Messages follow ``Event | key=value ...`` so they stay greppable in the
plain file sink and readable in the serialized (JSON lines) sink.
"""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(
    log_file: Optional[str] = "signal_trading.log",
    level: str = "INFO",
    enable_console: bool = True,
    serialize: bool = False,
) -> None:
    """Replace all sinks with a rotating file sink and an optional stderr sink.

    Args:
        log_file: Path to log file, or None to skip file logging
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to stderr as well
        serialize: Write the file sink as JSON lines instead of plain text
    """
    _logger.remove()

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            format=FILE_FORMAT,
            level=level,
            rotation="100 MB",
            retention="7 days",
            enqueue=True,
            serialize=serialize,
        )

    if enable_console:
        _logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)


def setup_from_config(persistence, enable_console: bool = True) -> None:
    """Configure logging from the ``persistence`` config section."""
    setup_logging(
        log_file=persistence.log_file or None,
        level=persistence.log_level.upper(),
        enable_console=enable_console,
        serialize=persistence.log_json,
    )


logger = _logger
