"""
Logging setup for the Stream Snapshot Service.

Console and rotating-file output. Worker threads are named after the stream
they watch, so the default format includes the thread name.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


DEFAULT_FORMAT = '%(asctime)s - %(name)s - [%(threadName)s] %(levelname)s - %(message)s'

# Module-level logger cache
_loggers: dict[str, logging.Logger] = {}
_initialized = False


def setup_logging(
    log_file: Optional[str] = None,
    level: str = 'INFO',
    max_size_mb: int = 50,
    backup_count: int = 5,
    log_format: Optional[str] = None,
    console: bool = True,
    access_log: bool = False
) -> None:
    """
    Initialize logging configuration.

    Args:
        log_file: Path to log file (None = no file logging)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        max_size_mb: Maximum log file size in MB before rotation
        backup_count: Number of backup files to keep
        log_format: Log format string
        console: Whether to log to console
        access_log: Whether to keep per-request aiohttp access lines
    """
    global _initialized

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(log_format or DEFAULT_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = []

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Preview pollers hit the snapshot routes every few seconds
    if not access_log:
        logging.getLogger('aiohttp.access').setLevel(logging.WARNING)

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the specified module.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    if name not in _loggers:
        if not _initialized:
            setup_logging()

        _loggers[name] = logging.getLogger(name)

    return _loggers[name]


def setup_from_config(config: dict) -> None:
    """
    Setup logging from the ``logging`` configuration section.

    Recognized keys: level, file, max_size_mb, backup_count, format,
    console, access_log.
    """
    setup_logging(
        log_file=config.get('file'),
        level=config.get('level', 'INFO'),
        max_size_mb=config.get('max_size_mb', 50),
        backup_count=config.get('backup_count', 5),
        log_format=config.get('format'),
        console=config.get('console', True),
        access_log=config.get('access_log', False)
    )
