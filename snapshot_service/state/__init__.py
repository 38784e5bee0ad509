"""
State module for the Stream Snapshot Service.
"""

from .models import WorkerStatus, WorkerInfo, ServiceHealth

__all__ = [
    'WorkerStatus',
    'WorkerInfo',
    'ServiceHealth',
]
