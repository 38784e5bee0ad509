"""
FFmpeg snapshot capture worker.

One worker owns one FFmpeg process that reads a stream's HTTP-HLS output and
overwrites a single JPEG every capture interval. The worker restarts its
process with capped exponential backoff until the restart ceiling is reached.

Workers do not lock anything themselves: every method that mutates state is
called by the registry with its lock held.
"""

import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from ..state.models import WorkerInfo
from ..utils.config import Config
from ..utils.exceptions import SpawnError
from ..utils.logger import get_logger
from .freshness import snapshot_age
from .paths import SnapshotPaths, resolve_source_url


logger = get_logger(__name__)


Spawner = Callable[[list[str]], subprocess.Popen]
Scheduler = Callable[[float, Callable[[], None]], Any]


@dataclass
class CaptureSettings:
    """FFmpeg and restart policy settings shared by all workers."""

    ffmpeg_path: str = 'ffmpeg'
    interval: int = 30
    width: int = 320
    quality: int = 5
    loglevel: str = 'error'

    base_url: str = 'http://localhost:8080'
    force_https: bool = False
    use_hint_host: bool = True

    max_restarts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    stop_timeout: float = 5.0

    @classmethod
    def from_config(cls, config: Config) -> 'CaptureSettings':
        capture = config.get_capture_config()
        source = config.get_source_config()
        workers = config.get_workers_config()

        return cls(
            ffmpeg_path=capture['ffmpeg_path'],
            interval=capture['interval'],
            width=capture['width'],
            quality=capture['quality'],
            loglevel=capture['loglevel'],
            base_url=source['base_url'],
            force_https=bool(source['force_https']),
            use_hint_host=bool(source['use_hint_host']),
            max_restarts=workers['max_restarts'],
            backoff_base=float(workers['backoff_base']),
            backoff_max=float(workers['backoff_max']),
            stop_timeout=float(workers['stop_timeout']),
        )


def spawn_process(cmd: list[str]) -> subprocess.Popen:
    """Start FFmpeg detached from our stdin, keeping stderr for diagnostics."""
    try:
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            # Own process group so a Ctrl-C on the service is not delivered to FFmpeg twice
            start_new_session=os.name != 'nt'
        )
    except FileNotFoundError:
        raise SpawnError(f"{cmd[0]} not found")
    except (OSError, ValueError) as e:
        # ValueError: an argument Popen cannot pass to exec (embedded NUL)
        raise SpawnError(f"Failed to start {cmd[0]}: {e}")


def start_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    """Run ``callback`` once after ``delay`` seconds on a daemon thread."""
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class CaptureWorker:
    """
    Per-stream FFmpeg process with restart policy.

    Exit notifications arrive on a watcher thread and are routed through the
    registry's ``on_exit`` callback; scheduled restarts go through
    ``on_restart_due`` so the registry can check, at fire time, that this
    worker is still registered.
    """

    def __init__(
        self,
        stream_id: str,
        settings: CaptureSettings,
        paths: SnapshotPaths,
        now: float,
        source_hint: Optional[str] = None,
        spawn: Optional[Spawner] = None,
        scheduler: Optional[Scheduler] = None,
        on_exit: Optional[Callable[['CaptureWorker', subprocess.Popen, int], None]] = None,
        on_restart_due: Optional[Callable[['CaptureWorker'], None]] = None
    ):
        """
        Initialize worker.

        Args:
            stream_id: Sanitized stream identifier
            settings: Capture and restart settings
            paths: Snapshot path resolver
            now: Registration time on the registry's clock
            source_hint: Playback URL the stream was registered with
            spawn: Process factory (defaults to subprocess.Popen)
            scheduler: Deferred-call factory (defaults to threading.Timer)
            on_exit: Called from the watcher thread when the process exits
            on_restart_due: Called when a backoff delay elapses
        """
        self.stream_id = stream_id
        self.settings = settings
        self.paths = paths
        self.source_hint = source_hint

        self.process: Optional[subprocess.Popen] = None
        self.last_activity = now
        self.restart_count = 0
        self.is_active = False
        self.restart_pending = False
        self.source_url: Optional[str] = None

        self._spawn = spawn or spawn_process
        self._scheduler = scheduler or start_timer
        self._on_exit = on_exit or (lambda worker, proc, code: worker.handle_exit(proc, code))
        self._on_restart_due = on_restart_due or (lambda worker: worker.start())
        self._watcher: Optional[threading.Thread] = None

    @property
    def snapshot_path(self) -> Path:
        return self.paths.snapshot_path(self.stream_id)

    @property
    def exhausted(self) -> bool:
        return self.restart_count >= self.settings.max_restarts

    def touch(self, now: float) -> None:
        """Extend the TTL."""
        self.last_activity = now

    def idle_for(self, now: float) -> float:
        return now - self.last_activity

    def backoff_delay(self) -> float:
        """Delay before the next restart, in seconds."""
        exponent = max(self.restart_count - 1, 0)
        return min(self.settings.backoff_base * (2 ** exponent), self.settings.backoff_max)

    def build_command(self, source_url: str, output_path: Path) -> list[str]:
        """Build the FFmpeg command for periodic single-file JPEG snapshots."""
        return [
            self.settings.ffmpeg_path,
            '-hide_banner',
            '-loglevel', self.settings.loglevel,

            # Ride out SRS restarts and network blips
            '-reconnect', '1',
            '-reconnect_streamed', '1',
            '-reconnect_on_network_error', '1',
            '-i', source_url,

            '-vf', f'fps=1/{self.settings.interval},scale={self.settings.width}:-1',
            '-q:v', str(self.settings.quality),
            '-f', 'image2',
            '-update', '1',  # Keep overwriting the same file
            '-y',
            str(output_path),
        ]

    def start(self) -> bool:
        """
        Spawn the FFmpeg process.

        Returns:
            True if a process was started
        """
        if self.process is not None:
            return False

        if self.exhausted:
            logger.debug(f"[{self.stream_id}] Restart ceiling reached, not starting")
            return False

        self.restart_pending = False
        self.source_url = resolve_source_url(
            self.stream_id,
            self.source_hint,
            self.settings.base_url,
            force_https=self.settings.force_https,
            use_hint_host=self.settings.use_hint_host
        )
        output_path = self.snapshot_path
        cmd = self.build_command(self.source_url, output_path)

        self.restart_count += 1
        logger.info(
            f"[{self.stream_id}] Starting FFmpeg "
            f"(attempt {self.restart_count}/{self.settings.max_restarts})"
        )
        logger.info(f"[{self.stream_id}]   Input: {self.source_url}")
        logger.info(f"[{self.stream_id}]   Output: {output_path}")

        try:
            self.paths.ensure_dir()
            process = self._spawn(cmd)
        except (SpawnError, OSError, ValueError) as e:
            logger.error(f"[{self.stream_id}] Process error: {e}")
            # A spawn failure counts as an attempt and backs off like an exit
            self.handle_exit(None, None)
            return False

        self.process = process
        self.is_active = True
        logger.info(f"[{self.stream_id}] FFmpeg started (PID: {process.pid})")

        self._watcher = threading.Thread(
            target=self._watch,
            args=(process,),
            daemon=True,
            name=f"ffmpeg-{self.stream_id}"
        )
        self._watcher.start()
        return True

    def _watch(self, process: subprocess.Popen) -> None:
        """Drain stderr, wait for exit and report it."""
        if process.stderr is not None:
            try:
                for raw in process.stderr:
                    line = raw.decode('utf-8', errors='replace').strip()
                    lowered = line.lower()
                    if 'error' in lowered or 'failed' in lowered:
                        logger.error(f"[{self.stream_id}] {line}")
            except (OSError, ValueError):
                # Pipe closed under us during stop
                pass

        returncode = process.wait()
        self._on_exit(self, process, returncode)

    def handle_exit(self, process: Optional[subprocess.Popen], returncode: Optional[int]) -> None:
        """
        Handle process exit (or spawn failure when ``process`` is None).

        Exits of a process that was already stopped and replaced are ignored.
        """
        if process is not None and process is not self.process:
            logger.debug(f"[{self.stream_id}] Ignoring exit of retired process {process.pid}")
            return

        if process is not None:
            logger.info(f"[{self.stream_id}] Process exited with code {returncode}")

        self.process = None
        self.is_active = False

        if self.exhausted:
            logger.error(
                f"[{self.stream_id}] Max restart attempts exceeded "
                f"({self.settings.max_restarts}), worker inert until re-registered"
            )
            return

        delay = self.backoff_delay()
        logger.info(
            f"[{self.stream_id}] Restarting in {delay:.1f}s "
            f"(attempt {self.restart_count + 1})"
        )
        self.restart_pending = True
        self._scheduler(delay, lambda: self._on_restart_due(self))

    def stop(self) -> Optional[subprocess.Popen]:
        """
        Ask the process to terminate without waiting for it.

        A SIGKILL follows after ``stop_timeout`` seconds if it is still alive.

        Returns:
            The stopped process, or None if nothing was running
        """
        process = self.process
        self.process = None
        self.is_active = False

        if process is None:
            return None

        logger.info(f"[{self.stream_id}] Stopping worker (PID: {process.pid})")

        try:
            process.terminate()
        except ProcessLookupError:
            # Process already dead
            return process
        except OSError as e:
            logger.error(f"[{self.stream_id}] Error stopping FFmpeg: {e}")

        self._scheduler(self.settings.stop_timeout, lambda: self._force_kill(process))
        return process

    def _force_kill(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return

        logger.warning(f"[{self.stream_id}] FFmpeg not responding, force killing...")
        try:
            process.kill()
        except OSError:
            pass

    def reset(self) -> None:
        """Clear the crash counter (health-triggered recovery only)."""
        self.restart_count = 0

    def info(self, now: float) -> WorkerInfo:
        """Snapshot of this worker's state."""
        return WorkerInfo(
            stream_id=self.stream_id,
            snapshot_path=self.snapshot_path,
            source_url=self.source_url,
            is_active=self.is_active,
            restart_count=self.restart_count,
            max_restarts=self.settings.max_restarts,
            restart_pending=self.restart_pending,
            pid=self.process.pid if self.process is not None else None,
            idle_seconds=self.idle_for(now),
            snapshot_age=snapshot_age(self.snapshot_path),
        )
