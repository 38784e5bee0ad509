"""
Main entry point for the Stream Snapshot Service.

Wires the worker registry, health monitor and HTTP server together.
"""

import asyncio
import shutil
import signal
import sys
from datetime import datetime
from typing import Optional

import click

from .utils.config import Config, load_config
from .utils.logger import setup_from_config, get_logger
from .utils.exceptions import ConfigurationError
from .capture.registry import WorkerRegistry
from .server.snapshot_server import SnapshotServer


logger = None  # Initialize after config


class SnapshotService:
    """
    Service composition root.

    Owns the one WorkerRegistry and hands it to the HTTP server. SIGINT and
    SIGTERM end the run loop, which shuts the registry down before exit.
    """

    def __init__(self, config: Config):
        """
        Initialize service with configuration.

        Args:
            config: Service configuration
        """
        self.config = config

        global logger
        setup_from_config(config.get_logging_config())
        logger = get_logger(__name__)

        self.started_at = datetime.now()
        self.registry = WorkerRegistry(config)
        self.server: Optional[SnapshotServer] = None

        self._running = False

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signame = signal.Signals(signum).name
            logger.info(f"Received {signame}, initiating shutdown...")
            self._running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def check(self) -> bool:
        """
        Check that snapshots can be produced on this host.

        Returns:
            True if FFmpeg is on PATH and the snapshot directory is writable
        """
        ffmpeg_path = self.config.get('capture.ffmpeg_path')
        if not shutil.which(ffmpeg_path):
            logger.error(f"{ffmpeg_path} not found in PATH")
            return False

        snapshot_dir = self.registry.paths.snapshot_dir
        probe = snapshot_dir / '.write-test'
        try:
            self.registry.paths.ensure_dir()
            probe.write_bytes(b'')
            probe.unlink()
        except OSError as e:
            logger.error(f"Snapshot directory {snapshot_dir} not writable: {e}")
            return False

        logger.info("FFmpeg found and snapshot directory writable")
        return True

    def start(self) -> None:
        """Start background components."""
        logger.info("=" * 50)
        logger.info("Starting Stream Snapshot Service")
        logger.info("=" * 50)

        self.registry.start_health_monitor()
        self._running = True

    async def start_server(self) -> None:
        """Start HTTP server (async)."""
        if self.config.get('server.enabled', True):
            self.server = SnapshotServer(self.config, self.registry, self.started_at)
            await self.server.start()

    async def stop_server(self) -> None:
        """Stop HTTP server (async)."""
        if self.server:
            await self.server.stop()

    def stop(self) -> None:
        """Stop every worker and the health monitor."""
        logger.info("Stopping service...")
        self.registry.shutdown()
        logger.info("Service stopped")

    async def run(self) -> None:
        """Main run loop."""
        self._setup_signals()
        self.start()
        await self.start_server()

        try:
            while self._running:
                await asyncio.sleep(1)
        finally:
            await self.stop_server()
            self.stop()


@click.command()
@click.option(
    '--config', '-c',
    default='config.yaml',
    help='Path to configuration file'
)
@click.option(
    '--check',
    is_flag=True,
    help='Check FFmpeg and snapshot directory, then exit'
)
def main(config: str, check: bool):
    """
    Stream Snapshot Service

    Keeps an FFmpeg snapshot worker alive for every registered live stream.
    """
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    setup_from_config(cfg.get_logging_config())
    global logger
    logger = get_logger(__name__)

    service = SnapshotService(cfg)

    if check:
        success = service.check()
        service.registry.shutdown(wait=False)
        sys.exit(0 if success else 1)

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception(f"Service error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
