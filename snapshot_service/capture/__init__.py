"""
Capture module for the Stream Snapshot Service.

Handles FFmpeg snapshot workers, their registry and health monitoring.
"""

from .paths import SnapshotPaths, sanitize_stream_id, resolve_source_url
from .freshness import has_recent_snapshot, snapshot_age
from .worker import CaptureSettings, CaptureWorker
from .health_check import HealthMonitor
from .registry import WorkerRegistry

__all__ = [
    'SnapshotPaths',
    'sanitize_stream_id',
    'resolve_source_url',
    'has_recent_snapshot',
    'snapshot_age',
    'CaptureSettings',
    'CaptureWorker',
    'HealthMonitor',
    'WorkerRegistry',
]
