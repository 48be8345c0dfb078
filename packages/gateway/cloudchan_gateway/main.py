"""FastAPI application entry point with lifespan management.

Startup: configure logging, build the gateway engine (catalogue, health
ledger, result cache, verifier, retry scheduler), re-arm persisted retry
timers, mount routers.
Shutdown: stop the retry supervisor, drain background propagation, persist
the health ledger, close the HTTP client.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from cloudchan_gateway.config.settings import GatewaySettings
from cloudchan_gateway.logging_config import configure_logging
from cloudchan_gateway.middleware.error_handler import register_error_handlers
from cloudchan_gateway.middleware.request_id import RequestIdMiddleware
from cloudchan_gateway.routers.files import create_files_router
from cloudchan_gateway.routers.gateways import create_gateways_router
from cloudchan_gateway.routers.health import create_health_router
from cloudchan_gateway.services.engine import GatewayEngine
from cloudchan_gateway.storage.files import KeyValueFileStore
from cloudchan_gateway.storage.kv import FileKeyValueStore

logger = logging.getLogger(__name__)

_USER_AGENT = "cloudchan-gateway"


def build_engine(settings: GatewaySettings) -> tuple[GatewayEngine, httpx.AsyncClient]:
    """Engine backed by the file store under ``settings.state_dir``."""
    store = FileKeyValueStore(settings.state_dir)
    client = httpx.AsyncClient(
        follow_redirects=True,
        headers={"User-Agent": f"{_USER_AGENT}/{settings.app_version}"},
    )
    engine = GatewayEngine(settings, store, KeyValueFileStore(store), client)
    return engine, client


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    settings: GatewaySettings = app.state.settings

    engine: GatewayEngine | None = getattr(app.state, "engine", None)
    client: httpx.AsyncClient | None = None
    if engine is None:
        engine, client = build_engine(settings)
        app.state.engine = engine

    await engine.start()

    # Mount routers
    app.include_router(create_health_router(engine=engine))
    app.include_router(create_gateways_router(engine=engine))
    app.include_router(create_files_router(engine=engine))

    logger.info("Gateway service started on port %d", settings.port)

    yield

    # --- Shutdown ---
    logger.info("Shutting down gateway service")

    await engine.shutdown()
    if client is not None:
        await client.aclose()

    logger.info("Gateway service shut down")


def create_app(
    settings: GatewaySettings | None = None,
    engine: GatewayEngine | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    settings:
        Configuration; read from ``CLOUDCHAN_*`` environment variables when
        omitted.
    engine:
        Pre-built engine. The caller keeps ownership of its HTTP client.
    """
    settings = settings or GatewaySettings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="CloudChan Gateway Service",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if engine is not None:
        app.state.engine = engine

    # Register error handlers
    register_error_handlers(app)

    app.add_middleware(RequestIdMiddleware)

    return app
