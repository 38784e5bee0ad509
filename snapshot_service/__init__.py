"""
Stream Snapshot Service

Keeps a background FFmpeg process per live stream that refreshes a JPEG
preview on disk, restarts crashed or stalled capture, and reclaims workers
for streams nobody is watching.
"""

__version__ = "1.0.0"

from .utils.config import load_config, Config
from .utils.logger import setup_logging, get_logger
from .capture.registry import WorkerRegistry
from .main import SnapshotService, main

__all__ = [
    'load_config',
    'Config',
    'setup_logging',
    'get_logger',
    'WorkerRegistry',
    'SnapshotService',
    'main',
]
