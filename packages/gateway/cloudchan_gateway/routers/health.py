"""Health, readiness, and metrics endpoints.

- GET /health: service status + gateway pool stats
- GET /readiness: 200 only when the engine has started with a non-empty catalogue
- GET /metrics: operational metrics
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Response

from cloudchan_gateway.models.responses import ApiResponse

if TYPE_CHECKING:
    from cloudchan_gateway.services.engine import GatewayEngine


def create_health_router(*, engine: GatewayEngine | Any = None) -> APIRouter:
    """Factory that creates the health router with injected dependencies."""

    health_router = APIRouter(tags=["health"])

    @health_router.get("/health")
    async def health() -> dict:
        """Service health check with gateway pool statistics."""
        stats = engine.get_stats() if engine else {}

        return ApiResponse(
            success=True,
            data={
                "status": "healthy",
                "gateway_pool": stats,
            },
        ).model_dump()

    @health_router.get("/readiness")
    async def readiness(response: Response) -> dict:
        """Readiness probe: 200 iff the engine started and knows at least one gateway."""
        started = bool(engine and engine.started)
        gateways = len(engine.registry) if engine else 0

        is_ready = started and gateways > 0

        if not is_ready:
            response.status_code = 503

        return ApiResponse(
            success=is_ready,
            data={
                "ready": is_ready,
                "started": started,
                "gateways": gateways,
            },
            error=None if is_ready else "Service not ready",
        ).model_dump()

    @health_router.get("/metrics")
    async def metrics() -> dict:
        """Operational metrics endpoint."""
        gateway_stats = engine.get_stats() if engine else {}
        scheduler_stats = engine.scheduler.get_stats() if engine else {}
        propagation_stats = engine.warmer.get_stats() if engine else {}

        return ApiResponse(
            success=True,
            data={
                "gateway_pool": gateway_stats,
                "verify_retry": scheduler_stats,
                "propagation": propagation_stats,
            },
        ).model_dump()

    return health_router
