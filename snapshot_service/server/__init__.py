"""
Server module for the Stream Snapshot Service.

Provides the HTTP API for registration and preview images.
"""

from .snapshot_server import SnapshotServer

__all__ = [
    'SnapshotServer',
]
