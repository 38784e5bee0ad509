"""
Data models for the Stream Snapshot Service.

Read-only views of worker state used for reporting.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class WorkerStatus(Enum):
    """Derived lifecycle state of a capture worker."""

    RUNNING = "running"       # FFmpeg process alive
    BACKOFF = "backoff"       # Process exited, restart scheduled
    EXHAUSTED = "exhausted"   # Restart ceiling reached, inert until re-registered
    IDLE = "idle"             # Never started or stopped


@dataclass
class WorkerInfo:
    """Point-in-time copy of a worker's state."""

    stream_id: str
    snapshot_path: Path
    source_url: Optional[str] = None

    is_active: bool = False
    restart_count: int = 0
    max_restarts: int = 5
    restart_pending: bool = False

    pid: Optional[int] = None
    idle_seconds: float = 0.0
    snapshot_age: Optional[float] = None

    @property
    def status(self) -> WorkerStatus:
        if self.is_active:
            return WorkerStatus.RUNNING
        if self.restart_pending:
            return WorkerStatus.BACKOFF
        if self.restart_count >= self.max_restarts:
            return WorkerStatus.EXHAUSTED
        return WorkerStatus.IDLE

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            'streamId': self.stream_id,
            'status': self.status.value,
            'isActive': self.is_active,
            'restartCount': self.restart_count,
            'pid': self.pid,
            'sourceUrl': self.source_url,
            'snapshot': self.snapshot_path.name,
            'idleSeconds': round(self.idle_seconds, 1),
            'snapshotAge': round(self.snapshot_age, 1) if self.snapshot_age is not None else None,
        }


@dataclass
class ServiceHealth:
    """Health summary served on /api/health."""

    started_at: datetime
    workers: int = 0
    active_workers: int = 0
    monitor_running: bool = False

    @property
    def uptime(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            'status': 'ok',
            'timestamp': datetime.now().isoformat(),
            'uptime': round(self.uptime, 1),
            'snapshotWorkers': self.active_workers,
            'registeredWorkers': self.workers,
            'healthMonitor': self.monitor_running,
        }
