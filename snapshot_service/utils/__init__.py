"""
Utilities module for the Stream Snapshot Service.
"""

from .config import load_config, Config
from .logger import setup_logging, get_logger
from .exceptions import (
    SnapshotServiceError,
    ConfigurationError,
    CaptureError,
    SpawnError,
)

__all__ = [
    'load_config',
    'Config',
    'setup_logging',
    'get_logger',
    'SnapshotServiceError',
    'ConfigurationError',
    'CaptureError',
    'SpawnError',
]
