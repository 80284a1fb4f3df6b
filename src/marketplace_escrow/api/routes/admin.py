"""Administrative REST API routes.

Routes:
    POST   /api/v1/admin/auto-release/run  - Run one auto-release sweep now
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_escrow.api.deps import get_app_session_factory, get_gateway, require_admin
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.domain.identity import Actor
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.payments import AutoReleaseReportResponse, AutoReleaseRunRequest
from marketplace_escrow.services.auto_release import AutoReleaseScheduler

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])
logger = get_logger(__name__)


@router.post(
    "/auto-release/run",
    response_model=AutoReleaseReportResponse,
    summary="Run one auto-release sweep",
)
async def run_auto_release(
    body: AutoReleaseRunRequest | None = None,
    admin: Actor = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_gateway),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_app_session_factory),
) -> AutoReleaseReportResponse:
    """Each payment is released in its own transaction; safe to run alongside the scheduler."""
    logger.info("auto_release.manual_run", by=admin.actor_id)
    scheduler = AutoReleaseScheduler(session_factory, gateway)
    report = await scheduler.run_once(batch_size=body.batch_size if body else None)
    return AutoReleaseReportResponse(**report.to_dict())
