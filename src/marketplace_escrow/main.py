"""ASGI entry point for the marketplace escrow API.

Startup wires, in order: logging, the database (tables are created on
SQLite and in development), the event stream (Redis, or the log when Redis
is down), the payment gateway, and the in-process auto-release sweep when
AUTO_RELEASE_ENABLED is set. Shutdown unwinds them in reverse.

Run with:
    uv run uvicorn marketplace_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from marketplace_escrow.config import get_settings
from marketplace_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from marketplace_escrow.config import Settings

API_VERSION = "0.1.0"


def _start_sweep(app: FastAPI, settings: Settings) -> tuple[asyncio.Task | None, asyncio.Event]:
    """Run the auto-release sweep inside the API process when enabled.

    Deployments that run ``marketplace-auto-release`` from cron leave it off.
    """
    stop_event = asyncio.Event()
    if not settings.auto_release_enabled:
        return None, stop_event

    from marketplace_escrow.services.auto_release import AutoReleaseScheduler

    scheduler = AutoReleaseScheduler(app.state.session_factory, app.state.gateway, settings)
    return asyncio.create_task(scheduler.run_forever(stop_event=stop_event)), stop_event


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    from marketplace_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )
    from marketplace_escrow.infrastructure.gateway import build_gateway
    from marketplace_escrow.infrastructure.redis_client import close_redis, connect_event_stream

    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, gateway=settings.gateway_mode)

    await init_db()
    app.state.session_factory = get_session_factory()
    await connect_event_stream(settings)
    app.state.gateway = build_gateway(settings)
    sweep, stop_sweep = _start_sweep(app, settings)

    logger.info("app.started", host=settings.app_host, port=settings.app_port)
    try:
        yield
    finally:
        logger.info("app.shutting_down")
        if sweep is not None:
            stop_sweep.set()
            await asyncio.wait_for(sweep, timeout=settings.auto_release_interval_seconds)
        aclose = getattr(app.state.gateway, "aclose", None)
        if aclose is not None:
            await aclose()
        await close_db()
        await close_redis()
        logger.info("app.stopped")


def create_app() -> FastAPI:
    """Build the FastAPI application with middleware and every router."""
    from marketplace_escrow.api.middleware import setup_middleware
    from marketplace_escrow.api.routes import (
        admin,
        distributions,
        health,
        payments,
        requests,
        reviews,
        slots,
    )

    settings = get_settings()
    app = FastAPI(
        title="Marketplace Escrow Core",
        description=(
            "Service request lifecycle and escrow-payment ledger for a "
            "client/provider marketplace."
        ),
        version=API_VERSION,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    setup_middleware(app)

    for module in (health, requests, slots, payments, distributions, reviews, admin):
        app.include_router(module.router)
    return app


app = create_app()
