"""
Registry of snapshot capture workers.

The registry is the single owner of worker state. Caller registration,
process-exit notifications, backoff restarts and health-check mutations all
go through one lock here.
"""

import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from ..state.models import WorkerInfo
from ..utils.config import Config
from ..utils.logger import get_logger
from .freshness import has_recent_snapshot
from .health_check import HealthMonitor
from .paths import SnapshotPaths, sanitize_stream_id
from .worker import CaptureSettings, CaptureWorker, Scheduler, Spawner


logger = get_logger(__name__)


class WorkerRegistry:
    """
    Keeps one FFmpeg snapshot worker alive per registered stream.

    No method raises to its caller: failures end up in worker state and in
    the log.
    """

    def __init__(
        self,
        config: Config,
        spawn: Optional[Spawner] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the registry.

        Args:
            config: Service configuration
            spawn: Process factory for workers (tests pass fakes)
            scheduler: Deferred-call factory for backoff and kill timers
            clock: Monotonic clock used for the TTL
        """
        self.config = config
        self.settings = CaptureSettings.from_config(config)
        self.paths = SnapshotPaths(config.get_snapshot_dir())

        workers_config = config.get_workers_config()
        self.ttl = workers_config['ttl']

        self._spawn = spawn
        self._scheduler = scheduler
        self.clock = clock or time.monotonic

        self._workers: dict[str, CaptureWorker] = {}
        self._lock = threading.Lock()
        self._monitor: Optional[HealthMonitor] = None
        self._closed = False

        try:
            self.paths.ensure_dir()
        except OSError as e:
            logger.error(f"Cannot create snapshot directory {self.paths.snapshot_dir}: {e}")

        if spawn is None and not shutil.which(self.settings.ffmpeg_path):
            logger.warning(f"{self.settings.ffmpeg_path} not found in PATH - snapshots unavailable")

        logger.info(f"Snapshot registry initialized: {self.paths.snapshot_dir}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    def __contains__(self, stream_id: str) -> bool:
        with self._lock:
            return sanitize_stream_id(stream_id) in self._workers

    def start_health_monitor(self) -> HealthMonitor:
        """Start the periodic TTL / staleness sweep."""
        if self._monitor is None:
            health = self.config.get_health_config()
            self._monitor = HealthMonitor(
                self,
                check_interval=health['check_interval'],
                stale_threshold=health['stale_threshold'],
                ttl=self.ttl
            )
        self._monitor.start()
        return self._monitor

    @property
    def monitor_running(self) -> bool:
        return self._monitor is not None and self._monitor.is_running

    def register(self, stream_id: str, source_hint: Optional[str] = None) -> Optional[str]:
        """
        Register a stream for snapshot generation, or extend its TTL.

        Args:
            stream_id: Stream identifier as supplied by the caller
            source_hint: Playback URL used to derive the capture source

        Returns:
            The sanitized stream id, or None if nothing usable was left
        """
        sanitized = sanitize_stream_id(stream_id)
        if not sanitized:
            logger.warning(f"Ignoring registration with unusable stream id {stream_id!r}")
            return None

        with self._lock:
            if self._closed:
                logger.warning(f"Registry shut down, ignoring registration of {sanitized}")
                return None

            existing = self._workers.get(sanitized)
            if existing is not None:
                existing.touch(self.clock())
                logger.debug(f"Extended TTL for {sanitized}")
                return sanitized

            worker = CaptureWorker(
                sanitized,
                self.settings,
                self.paths,
                now=self.clock(),
                source_hint=source_hint,
                spawn=self._spawn,
                scheduler=self._scheduler,
                on_exit=self._on_process_exit,
                on_restart_due=self._on_restart_due
            )
            self._workers[sanitized] = worker
            worker.start()

        logger.info(f"Registered new stream {sanitized}")
        return sanitized

    def unregister(self, stream_id: str) -> bool:
        """
        Stop a stream's worker immediately. Unknown ids are a no-op.

        Returns:
            True if a worker was removed
        """
        sanitized = sanitize_stream_id(stream_id)

        with self._lock:
            worker = self._workers.pop(sanitized, None)
            if worker is None:
                return False
            worker.stop()

        logger.info(f"Unregistered stream {sanitized}")
        return True

    def recover(self, stream_id: str) -> bool:
        """
        Restart a running worker whose output went stale.

        This is the only path that clears the crash counter.

        Returns:
            True if the worker was restarted
        """
        sanitized = sanitize_stream_id(stream_id)

        with self._lock:
            worker = self._workers.get(sanitized)
            if worker is None or not worker.is_active:
                return False

            worker.stop()
            worker.reset()
            return worker.start()

    def expire(self, stream_id: str, ttl: Optional[float] = None) -> bool:
        """
        Remove a worker if it is still idle past the TTL.

        The TTL is re-checked under the lock so a registration that raced the
        health sweep keeps its worker.

        Returns:
            True if the worker was removed
        """
        sanitized = sanitize_stream_id(stream_id)
        ttl = self.ttl if ttl is None else ttl

        with self._lock:
            worker = self._workers.get(sanitized)
            if worker is None or worker.idle_for(self.clock()) <= ttl:
                return False

            worker.stop()
            del self._workers[sanitized]

        logger.info(f"TTL expired for {sanitized}")
        return True

    def _on_process_exit(
        self,
        worker: CaptureWorker,
        process: subprocess.Popen,
        returncode: int
    ) -> None:
        with self._lock:
            worker.handle_exit(process, returncode)

    def _on_restart_due(self, worker: CaptureWorker) -> None:
        with self._lock:
            worker.restart_pending = False

            # Membership is checked now, not when the restart was scheduled
            if self._workers.get(worker.stream_id) is not worker:
                logger.debug(f"[{worker.stream_id}] Dropping restart for unregistered worker")
                return

            worker.start()

    def active_count(self) -> int:
        """Number of workers with a live FFmpeg process."""
        with self._lock:
            return sum(1 for worker in self._workers.values() if worker.is_active)

    def workers(self) -> list[WorkerInfo]:
        """State of every registered worker."""
        with self._lock:
            now = self.clock()
            return [worker.info(now) for worker in self._workers.values()]

    def get(self, stream_id: str) -> Optional[WorkerInfo]:
        """State of one worker, or None if not registered."""
        with self._lock:
            worker = self._workers.get(sanitize_stream_id(stream_id))
            return worker.info(self.clock()) if worker is not None else None

    def resolve_snapshot_path(self, stream_id: str) -> Path:
        """Snapshot file for a stream, whether or not it is registered."""
        return self.paths.snapshot_path(stream_id)

    def has_recent_snapshot(self, stream_id: str, max_age: float = 60) -> bool:
        """Check whether a stream's snapshot was written within ``max_age`` seconds."""
        return has_recent_snapshot(self.resolve_snapshot_path(stream_id), max_age)

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop the health monitor and every worker, then clear the registry.

        Args:
            wait: Block up to the stop timeout for processes to exit,
                SIGKILLing any that do not
        """
        logger.info("Shutting down snapshot workers...")

        # Outside the lock: the monitor thread may be waiting for it
        if self._monitor is not None:
            self._monitor.stop()

        with self._lock:
            self._closed = True
            stopped = [worker.stop() for worker in self._workers.values()]
            self._workers.clear()

        if wait:
            self._reap([process for process in stopped if process is not None])

        logger.info("Shutdown complete")

    def _reap(self, processes: list[subprocess.Popen]) -> None:
        deadline = time.monotonic() + self.settings.stop_timeout

        for process in processes:
            remaining = max(deadline - time.monotonic(), 0)
            try:
                process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                logger.warning(f"FFmpeg (PID: {process.pid}) not responding, force killing...")
                try:
                    process.kill()
                except OSError:
                    pass
