"""Health check HTTP endpoint."""

from typing import Any

from aiohttp import web

from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.intelligence.candidate_errors import CandidateErrorManager
from tradeguard.logging import get_logger
from tradeguard.readiness.coordinator import ReadinessCoordinator

logger = get_logger(__name__)


class HealthCheck:
    """Diagnostic HTTP endpoint over readiness and model-health state.

    Routes:
        ``GET /`` and ``GET /health``: readiness summary; HTTP 503 when the
        portfolio snapshot is not trusted.
        ``GET /health/detailed``: detailed coordinator status, model health
        metrics and blacklisted symbols.
    """

    def __init__(
        self,
        readiness: ReadinessCoordinator,
        errors: CandidateErrorManager,
        config: TradeGuardSettings | None = None,
    ) -> None:
        self._readiness = readiness
        self._errors = errors
        self._config = config or default_settings
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._running = False

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/health/detailed", self._detailed_handler)
        app.router.add_get("/", self._health_handler)
        return app

    async def start(self) -> None:
        """Start the health check server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, "0.0.0.0", self._config.health_check_port)
        await self._site.start()

        self._running = True
        logger.info(f"Health check server started on port {self._config.health_check_port}")

    async def stop(self) -> None:
        """Stop the health check server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._running = False
        logger.info("Health check server stopped")

    def _summary(self) -> dict[str, Any]:
        status = self._readiness.get_status()
        return {
            "status": "healthy" if status.state.is_trusted else "degraded",
            "readiness": status.state.value,
            "reason": status.reason,
            "snapshot_age": round(status.snapshot_age, 1),
            "retry_count": status.retry_count,
            "model_success_rate": round(self._errors.get_success_rate(), 4),
            "blacklisted": self._errors.get_blacklisted_symbols(),
        }

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests."""
        summary = self._summary()
        code = 200 if summary["status"] == "healthy" else 503
        return web.json_response(summary, status=code)

    async def _detailed_handler(self, request: web.Request) -> web.Response:
        blacklisted = self._errors.get_blacklisted_symbols()
        return web.json_response(
            {
                "readiness": self._readiness.get_detailed_status(),
                "model_health": self._errors.get_health_metrics().model_dump(mode="json"),
                "model_success_rate": self._errors.get_success_rate(),
                "blacklist": {
                    symbol: round(self._errors.blacklist_remaining(symbol), 1)
                    for symbol in blacklisted
                },
            }
        )
