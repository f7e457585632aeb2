"""
Health check endpoints for pipeline workers.

- /health/live  - Liveness probe (is the process serving?)
- /health/ready - Readiness probe (is the worker started and connected?)

Usage:
    health = HealthCheckServer(port=8080, worker_name="sync-worker")
    await health.start()
    health.set_ready(True)
    ...
    await health.stop()
"""

import logging
from datetime import datetime

from aiohttp import web

from core.utils import utc_now

logger = logging.getLogger(__name__)


class HealthCheckServer:
    """
    HTTP server for liveness and readiness probes.

    Runs on the worker's own event loop. Port 0 picks a free port; if the
    configured port is in use the server falls back to a free one. A
    ``port`` of None disables the server.
    """

    def __init__(self, port: int | None = 8080, worker_name: str = "worker"):
        self.port = port
        self.worker_name = worker_name
        self._enabled = port is not None
        self._ready = False
        self._error_message: str | None = None
        self._started_at: datetime = utc_now()
        self._actual_port: int | None = None
        self._runner: web.AppRunner | None = None

    def set_ready(self, ready: bool) -> None:
        if ready != self._ready:
            logger.info(
                f"Readiness status changed: {self._ready} -> {ready}",
                extra={"worker_name": self.worker_name},
            )
        self._ready = ready

    def set_error(self, error_message: str) -> None:
        """Report not ready with a reason, e.g. after a fatal startup error."""
        self._error_message = error_message
        self._ready = False
        logger.error(
            "Health check error state set",
            extra={"worker_name": self.worker_name, "error": error_message},
        )

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def actual_port(self) -> int | None:
        return self._actual_port

    async def handle_liveness(self, request: web.Request) -> web.Response:
        uptime = (utc_now() - self._started_at).total_seconds()
        return web.json_response(
            {
                "status": "alive",
                "worker": self.worker_name,
                "uptime_seconds": int(uptime),
                "timestamp": utc_now().isoformat(),
            },
            status=200,
        )

    async def handle_readiness(self, request: web.Request) -> web.Response:
        if self._error_message:
            body = {
                "status": "error",
                "worker": self.worker_name,
                "error": self._error_message,
            }
            return web.json_response(body, status=503)
        if self._ready:
            return web.json_response({"status": "ready", "worker": self.worker_name}, status=200)
        return web.json_response({"status": "not_ready", "worker": self.worker_name}, status=503)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        return app

    async def start(self) -> None:
        if not self._enabled or self._runner is not None:
            return

        if not await self._try_start_on_port(self.port):
            logger.warning(
                f"Port {self.port} in use, falling back to dynamic port assignment",
                extra={"worker_name": self.worker_name, "original_port": self.port},
            )
            await self._try_start_on_port(0)

        logger.info(
            "Health check server started",
            extra={
                "worker_name": self.worker_name,
                "port": self._actual_port,
                "readiness_endpoint": f"http://localhost:{self._actual_port}/health/ready",
            },
        )

    async def _try_start_on_port(self, port: int) -> bool:
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", port, reuse_address=True)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            # Port in use: errno 98 (Linux) or 10048 (Windows)
            if e.errno in (98, 10048) and port != 0:
                return False
            raise

        self._runner = runner
        server = site._server
        if server is not None and server.sockets:
            self._actual_port = server.sockets[0].getsockname()[1]
        else:
            self._actual_port = port
        return True

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self._actual_port = None
        logger.info("Health check server stopped", extra={"worker_name": self.worker_name})


__all__ = ["HealthCheckServer"]
