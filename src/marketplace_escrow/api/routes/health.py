"""Liveness and dependency health.

Routes:
    GET    /health   - Database, event stream, gateway mode, release backlog

Redis is optional (events fall back to the log), so ``redis="disabled"``
still reports ``ok``. ``overdue_releases`` counts held payments more than
one sweep interval past their release date; a growing number means the
auto-release job is not running.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_escrow.api.deps import get_app_session_factory, get_app_settings
from marketplace_escrow.config import Settings
from marketplace_escrow.domain.clock import utcnow
from marketplace_escrow.infrastructure.database.repositories import PaymentRepository
from marketplace_escrow.infrastructure.redis_client import get_redis, is_redis_ready
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.common import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)

VERSION = "0.1.0"


async def _database_status(
    session_factory: async_sessionmaker[AsyncSession], settings: Settings
) -> tuple[str, int | None]:
    cutoff = utcnow() - timedelta(seconds=settings.auto_release_interval_seconds)
    try:
        async with session_factory() as session:
            overdue = await PaymentRepository(session).count_overdue_for_release(cutoff)
    except Exception as exc:
        logger.error("health.db_check_failed", error=str(exc))
        return f"unhealthy: {exc}", None
    return "healthy", overdue


async def _redis_status() -> str:
    if not is_redis_ready():
        return "disabled"
    try:
        await get_redis().ping()
    except Exception as exc:
        logger.error("health.redis_check_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    database, overdue = await _database_status(session_factory, settings)
    redis = await _redis_status()
    healthy = database == "healthy" and redis in ("healthy", "disabled")
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=VERSION,
        database=database,
        redis=redis,
        gateway=settings.gateway_mode,
        overdue_releases=overdue,
    )
