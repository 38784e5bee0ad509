"""
Health monitoring for snapshot workers.

Expires workers nobody re-registered within the TTL and restarts workers
whose FFmpeg process is alive but no longer refreshing its snapshot.
"""

from threading import Event, Thread
from typing import TYPE_CHECKING, Optional

from ..utils.logger import get_logger

if TYPE_CHECKING:
    from .registry import WorkerRegistry


logger = get_logger(__name__)


class HealthMonitor:
    """
    Periodic sweep over the worker registry.

    Each tick:
    - Workers idle past the TTL are removed (no further checks for them)
    - Active workers with a stale or missing snapshot are restarted with
      their crash counter cleared
    """

    def __init__(
        self,
        registry: 'WorkerRegistry',
        check_interval: float = 30,
        stale_threshold: float = 90,
        ttl: float = 120
    ):
        """
        Initialize health monitor.

        Args:
            registry: Worker registry to sweep
            check_interval: Seconds between sweeps
            stale_threshold: Maximum snapshot age in seconds for an active worker
            ttl: Maximum seconds since last registration
        """
        self.registry = registry
        self.check_interval = check_interval
        self.stale_threshold = stale_threshold
        self.ttl = ttl

        self._stop_event = Event()
        self._thread: Optional[Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start health check monitoring."""
        if self.is_running:
            return

        self._stop_event.clear()

        self._thread = Thread(
            target=self._check_loop,
            daemon=True,
            name="health-monitor"
        )
        self._thread.start()
        logger.info(f"Health monitor started (every {self.check_interval}s)")

    def stop(self) -> None:
        """Stop health check monitoring."""
        self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

        logger.info("Health monitor stopped")

    def _check_loop(self) -> None:
        """Main health check loop."""
        # First sweep one interval after start, like the snapshots themselves
        while not self._stop_event.wait(self.check_interval):
            try:
                self.check_once()
            except Exception as e:
                logger.error(f"Health check error: {e}")

    def check_once(self) -> list[str]:
        """
        Perform a single sweep.

        Returns:
            Stream ids removed for TTL expiry
        """
        expired: list[str] = []
        restarted = 0

        for info in self.registry.workers():
            try:
                if info.idle_seconds > self.ttl:
                    expired.append(info.stream_id)
                    continue

                if info.is_active and not self.registry.has_recent_snapshot(
                    info.stream_id, self.stale_threshold
                ):
                    logger.warning(f"[{info.stream_id}] No recent snapshot, restarting worker")
                    if self.registry.recover(info.stream_id):
                        restarted += 1

            except Exception as e:
                logger.error(f"[{info.stream_id}] Health check failed: {e}")

        removed: list[str] = []
        for stream_id in expired:
            try:
                if self.registry.expire(stream_id, self.ttl):
                    removed.append(stream_id)
            except Exception as e:
                logger.error(f"[{stream_id}] Failed to expire worker: {e}")

        if removed or restarted or len(self.registry) > 0:
            logger.info(
                f"Health check complete. Workers: {len(self.registry)}, "
                f"active: {self.registry.active_count()}, "
                f"expired: {len(removed)}, restarted: {restarted}"
            )

        return removed
