"""Health, readiness, and metrics endpoints.

- GET /health: engine status with queue, dispatcher and proxy pool stats
- GET /readiness: 200 only when workers are running and a proxy is usable
- GET /metrics: Prometheus text exposition
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from scrape_engine.models.responses import ApiResponse

if TYPE_CHECKING:
    from scrape_engine.proxy.manager import ProxyPoolManager
    from scrape_engine.services.dispatcher import Dispatcher
    from scrape_engine.services.job_queue import JobQueue


def create_health_router(
    *,
    job_queue: JobQueue,
    dispatcher: Dispatcher,
    proxy_pool: ProxyPoolManager,
) -> APIRouter:
    """Factory that creates the health router with injected dependencies."""

    health_router = APIRouter(tags=["health"])

    def _readiness() -> tuple[bool, int, int]:
        usable = proxy_pool.get_stats()["usable"]
        workers = dispatcher.get_stats()["workers"]
        return usable > 0 and workers > 0, usable, workers

    @health_router.get("/health")
    async def health() -> dict:
        """Engine status; "degraded" while it cannot dispatch."""
        ready, _usable, _workers = _readiness()
        return ApiResponse(
            success=True,
            data={
                "status": "healthy" if ready else "degraded",
                "queue": job_queue.get_stats(),
                "dispatcher": dispatcher.get_stats(),
                "proxy_pool": proxy_pool.get_stats(),
            },
        ).model_dump()

    @health_router.get("/readiness")
    async def readiness(response: Response) -> dict:
        ready, usable, workers = _readiness()
        if not ready:
            response.status_code = 503

        return ApiResponse(
            success=ready,
            data={"ready": ready, "proxy_usable": usable, "workers": workers},
            error=None if ready else "Service not ready",
        ).model_dump()

    @health_router.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return health_router
