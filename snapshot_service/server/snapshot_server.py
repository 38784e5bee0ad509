"""
HTTP server for snapshot registration and preview images.

The frontend registers the streams it is showing every few seconds (which
keeps their workers alive) and polls the preview JPEGs.
"""

import time
from datetime import datetime
from typing import Optional

from aiohttp import web

from ..capture.paths import sanitize_stream_id
from ..capture.registry import WorkerRegistry
from ..state.models import ServiceHealth
from ..utils.config import Config
from ..utils.logger import get_logger


logger = get_logger(__name__)


class SnapshotServer:
    """
    Async HTTP server in front of the worker registry.

    Routes:
    - GET    /api/health
    - POST   /api/snapshots/register
    - DELETE /api/snapshots/{stream_id}
    - GET    /api/snapshots/workers
    - GET    /api/streams/{stream_id}/snapshot
    - GET    /snapshots/{name}.jpg
    """

    def __init__(
        self,
        config: Config,
        registry: WorkerRegistry,
        started_at: Optional[datetime] = None
    ):
        """
        Initialize snapshot server.

        Args:
            config: Service configuration
            registry: Worker registry to drive
            started_at: Service start time reported on /api/health
        """
        self.config = config
        self.registry = registry
        self.started_at = started_at or datetime.now()

        server_config = config.get_server_config()
        self.enabled = server_config['enabled']
        self.host = server_config['host']
        self.port = server_config['port']
        self.cors_enabled = server_config['cors_enabled']
        self.cors_origins = server_config['cors_origins']

        self.capture_interval = config.get('capture.interval')

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()

        app.router.add_get('/api/health', self._handle_health)
        app.router.add_post('/api/snapshots/register', self._handle_register)
        app.router.add_get('/api/snapshots/workers', self._handle_workers)
        app.router.add_delete('/api/snapshots/{stream_id}', self._handle_unregister)
        app.router.add_get('/api/streams/{stream_id}/snapshot', self._handle_snapshot_redirect)
        app.router.add_get('/snapshots/{name}.jpg', self._handle_snapshot_file)

        if self.cors_enabled:
            app.middlewares.append(self._cors_middleware)

        return app

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler):
        """Add CORS headers to responses."""
        response = await handler(request)

        response.headers['Access-Control-Allow-Origin'] = self.cors_origins
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, DELETE, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'

        return response

    def health(self) -> ServiceHealth:
        return ServiceHealth(
            started_at=self.started_at,
            workers=len(self.registry),
            active_workers=self.registry.active_count(),
            monitor_running=self.registry.monitor_running,
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle health check request."""
        return web.json_response(self.health().to_dict())

    async def _handle_register(self, request: web.Request) -> web.Response:
        """
        Register (or keep alive) streams for snapshot generation.

        Accepts ``{"streams": [{"streamId": ..., "url": ...}]}`` or
        ``{"streamIds": [...]}``.
        """
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({'error': 'Request body must be JSON'}, status=400)

        if not isinstance(body, dict):
            return web.json_response({'error': 'Request body must be an object'}, status=400)

        if isinstance(body.get('streams'), list):
            entries = [
                (entry.get('streamId'), entry.get('url'))
                for entry in body['streams']
                if isinstance(entry, dict)
            ]
        elif isinstance(body.get('streamIds'), list):
            entries = [(stream_id, None) for stream_id in body['streamIds']]
        else:
            return web.json_response({'error': 'streamIds must be an array'}, status=400)

        registered = []
        for stream_id, url in entries:
            if not isinstance(stream_id, str):
                continue
            hint = url if isinstance(url, str) else None
            sanitized = self.registry.register(stream_id, hint)
            if sanitized:
                registered.append(sanitized)

        return web.json_response({
            'registered': len(registered),
            'streamIds': registered,
            'activeWorkers': self.registry.active_count(),
        })

    async def _handle_unregister(self, request: web.Request) -> web.Response:
        """Stop a stream's worker."""
        removed = self.registry.unregister(request.match_info['stream_id'])

        return web.json_response({
            'unregistered': removed,
            'activeWorkers': self.registry.active_count(),
        })

    async def _handle_workers(self, request: web.Request) -> web.Response:
        """List worker state."""
        return web.json_response([info.to_dict() for info in self.registry.workers()])

    async def _handle_snapshot_redirect(self, request: web.Request) -> web.Response:
        """Redirect to the static snapshot with a cache-busting bucket."""
        stream_id = sanitize_stream_id(request.match_info['stream_id'])
        snapshot_path = self.registry.resolve_snapshot_path(stream_id)

        if not stream_id or not snapshot_path.exists():
            return web.json_response({'error': 'Snapshot not available'}, status=404)

        bucket = int(time.time() // self.capture_interval)
        raise web.HTTPFound(f"/snapshots/{self.registry.paths.public_name(stream_id)}?t={bucket}")

    async def _handle_snapshot_file(self, request: web.Request) -> web.Response:
        """Serve a snapshot JPEG."""
        stream_id = sanitize_stream_id(request.match_info['name'])
        if not stream_id:
            return web.Response(text="Snapshot not found", status=404)

        snapshot_path = self.registry.resolve_snapshot_path(stream_id)

        # FFmpeg may be rewriting the file right now; a torn read is acceptable
        try:
            data = snapshot_path.read_bytes()
        except OSError:
            return web.Response(text="Snapshot not found", status=404)

        return web.Response(
            body=data,
            content_type='image/jpeg',
            headers={'Cache-Control': 'no-store'}
        )

    async def start(self) -> None:
        """Start the HTTP server."""
        if not self.enabled:
            logger.info("Snapshot server disabled in configuration")
            return

        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"Snapshot server started at http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            self._app = None
            logger.info("Snapshot server stopped")
