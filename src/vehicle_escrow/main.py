"""ASGI entry point for the vehicle resale escrow service.

The service owns the purchase request records, the escrow ledger and the
ownership history. Trust scores and telemetry come from the attestation
service; sale anchoring goes to the anchor service, or is simulated locally
while ``ANCHOR_SIMULATE`` is on. Redis only backs the simulated anchor's
replay cache, so the service starts without it.

Serve with:
    uv run uvicorn vehicle_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from vehicle_escrow.config import get_settings
from vehicle_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from vehicle_escrow.config import Settings


async def _connect_redis(settings: Settings) -> bool:
    """Connect the replay cache; False means anchors are remembered in process memory."""
    from vehicle_escrow.infrastructure.redis_client import init_redis

    logger = get_logger(__name__)
    try:
        await init_redis()
    except Exception as exc:
        logger.warning(
            "app.redis_unavailable",
            url=settings.redis_url,
            error=str(exc),
            fallback="in-process replay cache" if settings.anchor_simulate else None,
        )
        return False
    return True


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Bring up the ledger database and the optional replay cache around serving."""
    from vehicle_escrow.infrastructure.database.engine import close_db, init_db
    from vehicle_escrow.infrastructure.redis_client import close_redis

    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        attestation_service=settings.attestation_service_url,
        anchor_service=None if settings.anchor_simulate else settings.anchor_service_url,
        anchor_simulated=settings.anchor_simulate,
    )
    if settings.anchor_simulate and not settings.is_development:
        logger.warning("app.anchor_simulated_outside_development", env=settings.app_env)

    await init_db()
    redis_connected = await _connect_redis(settings)
    logger.info(
        "app.started",
        host=settings.app_host,
        port=settings.app_port,
        redis_connected=redis_connected,
    )

    try:
        yield
    finally:
        logger.info("app.shutting_down")
        await close_redis()
        await close_db()
        logger.info("app.stopped")


def create_app() -> FastAPI:
    """Build the API app: error mapping middleware plus purchase, vehicle and health routes."""
    from vehicle_escrow.api.middleware import setup_middleware
    from vehicle_escrow.api.routes.health import router as health_router
    from vehicle_escrow.api.routes.purchases import router as purchases_router
    from vehicle_escrow.api.routes.vehicles import router as vehicles_router

    settings = get_settings()
    interactive_docs = settings.is_development

    app = FastAPI(
        title="Vehicle Escrow",
        summary="Offer, escrow, verification and ownership transfer for vehicle resales",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if interactive_docs else None,
        redoc_url="/redoc" if interactive_docs else None,
    )
    setup_middleware(app)

    for router in (health_router, purchases_router, vehicles_router):
        app.include_router(router)
    return app


app = create_app()
