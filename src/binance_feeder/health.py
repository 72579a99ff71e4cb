"""Health check endpoints for the feeder service."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web, web_request
from aiohttp.web_response import Response
from prometheus_client import CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler.

    ``service`` is anything exposing ``async health_check() -> dict`` with a
    ``status`` of healthy, degraded or unhealthy.
    """

    def __init__(self, service, service_name: str = "binance-feeder"):
        self.service = service
        self.service_name = service_name

    async def health(self, request: web_request.Request) -> Response:
        try:
            health_data = await self.service.health_check()
            status = 200 if health_data["status"] == "healthy" else 503
            return web.json_response(health_data, status=status, dumps=_dumps)

        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "service": self.service_name,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": _now()
                },
                status=503
            )

    async def ready(self, request: web_request.Request) -> Response:
        """Ready while healthy or degraded."""
        try:
            health_data = await self.service.health_check()
            is_ready = health_data["status"] in ("healthy", "degraded")
            return web.json_response(
                {
                    "ready": is_ready,
                    "status": health_data["status"],
                    "timestamp": _now()
                },
                status=200 if is_ready else 503
            )

        except Exception as e:
            logger.error(f"Readiness check failed: {e}", exc_info=True)
            return web.json_response(
                {"ready": False, "error": str(e), "timestamp": _now()},
                status=503
            )

    async def live(self, request: web_request.Request) -> Response:
        return web.json_response({"alive": True, "timestamp": _now()}, status=200)

    async def metrics(self, request: web_request.Request) -> Response:
        """Prometheus text exposition."""
        try:
            body = self.service.render_metrics()
        except Exception as e:
            logger.error(f"Metrics rendering failed: {e}", exc_info=True)
            return web.Response(status=500, text=str(e))
        return web.Response(body=body, headers={"Content-Type": CONTENT_TYPE_LATEST})


def _dumps(obj) -> str:
    return json.dumps(obj, default=str)


class HealthCheckServer:
    """HTTP server for health check endpoints."""

    def __init__(self, service, host: str = "0.0.0.0", port: int = 8080, service_name: str = "binance-feeder"):
        self.service = service
        self.host = host
        self.port = port
        self.service_name = service_name
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        handler = HealthCheckHandler(self.service, self.service_name)
        app.router.add_get('/health', handler.health)
        app.router.add_get('/ready', handler.ready)
        app.router.add_get('/live', handler.live)
        if hasattr(self.service, "render_metrics"):
            app.router.add_get('/metrics', handler.metrics)
        return app

    async def start(self):
        logger.info(f"Starting health check server on {self.host}:{self.port}")

        self.app = self.build_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Health check server started on http://{self.host}:{self.port}")

    async def stop(self):
        logger.info("Stopping health check server")

        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()

        logger.info("Health check server stopped")
