"""Gateway catalogue, ranking and warming endpoints.

- GET    /api/v1/gateways: ranked list (cached run or fresh sweep)
- GET    /api/v1/gateways/best: race for a gateway serving a CID now
- POST   /api/v1/gateways: add a user gateway
- DELETE /api/v1/gateways: remove a gateway by URL
- POST   /api/v1/gateways/discover: merge public gateway lists
- GET    /api/v1/gateways/cleanup: cleanup report, nothing removed
- POST   /api/v1/gateways/cleanup: remove flagged gateways
- GET    /api/v1/network-profile: current AUTO | CN | INTL preference
- PUT    /api/v1/network-profile: change the preference
- POST   /api/v1/propagate: fire-and-forget warming for a CID
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query

from cloudchan_gateway.models.gateway import Gateway
from cloudchan_gateway.models.requests import (
    AddGatewayRequest,
    NetworkProfileRequest,
    PropagateRequest,
)
from cloudchan_gateway.models.responses import ok
from cloudchan_gateway.selection.query import SortField, filter_gateways, sort_gateways

if TYPE_CHECKING:
    from cloudchan_gateway.services.engine import GatewayEngine

logger = logging.getLogger(__name__)


def gateway_payload(gateway: Gateway) -> dict:
    return {
        "name": gateway.name,
        "url": gateway.url,
        "region": gateway.region.value,
        "priority": gateway.priority,
        "icon": gateway.icon,
        "available": gateway.available,
        "latency_ms": gateway.latency_ms,
        "health_score": gateway.health_score,
        "reliability": gateway.reliability,
        "error_type": gateway.error_type.value,
        "last_checked": gateway.last_checked,
    }


def create_gateways_router(*, engine: GatewayEngine | Any = None) -> APIRouter:
    """Factory that creates the gateways router with injected dependencies."""

    gateways_router = APIRouter(prefix="/api/v1", tags=["gateways"])

    @gateways_router.get("/gateways")
    async def list_gateways(
        refresh: bool = False,
        sort: SortField | None = None,
        descending: bool | None = None,
        region: str | None = None,
        available: bool | None = None,
        min_health_score: int | None = Query(default=None, ge=0, le=100),
        max_latency_ms: int | None = Query(default=None, ge=0),
        search: str | None = None,
    ) -> dict:
        """Download-ranked gateways; ``refresh=true`` forces a sweep."""
        ranked, lookup = await engine.ranked_gateways(refresh=refresh)
        selected = filter_gateways(
            ranked,
            region=region,
            available=available,
            min_health_score=min_health_score,
            max_latency_ms=max_latency_ms,
            search=search,
        )
        if sort is not None:
            selected = sort_gateways(selected, sort, descending)

        run = lookup.run
        return ok(
            {
                "gateways": [gateway_payload(g) for g in selected],
                "count": len(selected),
            },
            meta={
                "cache_age_seconds": lookup.age_seconds,
                "statistics": run.statistics.to_dict() if run is not None else None,
            },
        )

    @gateways_router.get("/gateways/best")
    async def best_gateway(cid: str | None = None) -> dict:
        """Race for a gateway serving ``cid``. 503 when every gateway fails."""
        gateway = await engine.best_gateway(cid)
        return ok(gateway_payload(gateway))

    @gateways_router.post("/gateways")
    async def add_gateway(body: AddGatewayRequest) -> dict:
        """Add a user gateway. Known URLs are returned unchanged."""
        gateway, created = engine.add_gateway(
            body.url,
            name=body.name,
            region=body.region,
            priority=body.priority,
            icon=body.icon,
        )
        return ok({"gateway": gateway_payload(gateway), "created": created})

    @gateways_router.delete("/gateways")
    async def remove_gateway(url: str = Query(..., min_length=1)) -> dict:
        """Remove a gateway by URL, in any form the add route accepts."""
        gateway = engine.remove_gateway(url)
        return ok({"removed": gateway_payload(gateway)})

    @gateways_router.post("/gateways/discover")
    async def discover_gateways() -> dict:
        """Fetch public gateway lists and merge unknown entries."""
        added = await engine.discover()
        return ok(
            {
                "added": [gateway_payload(g) for g in added],
                "count": len(added),
                "total": len(engine.registry),
            }
        )

    @gateways_router.get("/gateways/cleanup")
    async def cleanup_report() -> dict:
        """What a cleanup would remove, without removing it."""
        return ok(engine.cleanup_report().to_dict())

    @gateways_router.post("/gateways/cleanup")
    async def commit_cleanup() -> dict:
        """Remove every gateway the cleanup policy flags."""
        return ok(engine.commit_cleanup().to_dict())

    @gateways_router.get("/network-profile")
    async def get_network_profile() -> dict:
        return ok({"profile": engine.network_profile.value})

    @gateways_router.put("/network-profile")
    async def set_network_profile(body: NetworkProfileRequest) -> dict:
        profile = engine.set_network_profile(body.profile)
        logger.info("Network profile set to %s", profile.value)
        return ok({"profile": profile.value})

    @gateways_router.post("/propagate")
    async def propagate(body: PropagateRequest) -> dict:
        """Start warming ``cid`` in the background. Returns immediately."""
        if body.mode == "aggressive":
            engine.propagate_aggressively(body.cid)
        else:
            engine.propagate_in_background(body.cid, body.max_gateways)
        return ok({"cid": body.cid, "mode": body.mode, "started": True})

    return gateways_router
