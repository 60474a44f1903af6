"""Read-only HTTP status endpoint for the engine service."""

import logging
from typing import TYPE_CHECKING, Optional

import orjson
from aiohttp import web

if TYPE_CHECKING:
    from .app import EngineService

logger = logging.getLogger(__name__)


class StatusServer:
    """
    HTTP server exposing engine state for dashboards and health checks.

    Endpoints:
    - GET /health          - Feed connectivity (503 when disconnected)
    - GET /price           - Latest price
    - GET /trade           - Current trade state
    - GET /recommendation  - Best recommendation right now
    """

    def __init__(
        self,
        service: "EngineService",
        host: str = "127.0.0.1",
        port: int = 8080,
    ):
        """
        Initialize the server.

        Args:
            service: EngineService to report on
            host: Host to bind to
            port: Port to bind to
        """
        self.service = service
        self.host = host
        self.port = port

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @staticmethod
    def _json(data, status: int = 200) -> web.Response:
        return web.Response(
            status=status,
            content_type="application/json",
            body=orjson.dumps(data),
        )

    async def handle_health(self, request: web.Request) -> web.Response:
        feed = self.service.feed
        healthy = feed.is_connected()
        return self._json(
            {"healthy": healthy, **feed.stats},
            status=200 if healthy else 503,
        )

    async def handle_price(self, request: web.Request) -> web.Response:
        price = self.service.get_current_price()
        if price is None:
            return self._json({"error": "No price available"}, status=503)
        return self._json({"price": price, "connected": self.service.feed.is_connected()})

    async def handle_trade(self, request: web.Request) -> web.Response:
        return self._json(self.service.get_trade_state().to_dict())

    async def handle_recommendation(self, request: web.Request) -> web.Response:
        recommendation = await self.service.get_recommendation()
        return self._json(recommendation.to_dict())

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/price", self.handle_price)
        app.router.add_get("/trade", self.handle_trade)
        app.router.add_get("/recommendation", self.handle_recommendation)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"Status server started on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()

        logger.info("Status server stopped")
