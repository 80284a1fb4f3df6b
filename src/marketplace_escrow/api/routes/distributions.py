"""Firm distribution share REST API routes.

Routes:
    POST   /api/v1/distributions/shares/{id}/approve  - Member approves their share
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import get_db_session, get_gateway, get_provider_identity
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.domain.identity import ProviderIdentity
from marketplace_escrow.schemas.payments import DistributionShareResponse
from marketplace_escrow.services.escrow_ledger import EscrowLedger

router = APIRouter(prefix="/api/v1/distributions", tags=["Distributions"])


@router.post(
    "/shares/{share_id}/approve",
    response_model=DistributionShareResponse,
    summary="Approve a distribution share",
)
async def approve_share(
    share_id: uuid.UUID,
    identity: ProviderIdentity = Depends(get_provider_identity),
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> DistributionShareResponse:
    """The last approval finalises the split; a released payment is distributed at once."""
    ledger = EscrowLedger(session, gateway)
    share = await ledger.approve_share(share_id, identity.provider_id)
    return DistributionShareResponse.model_validate(share)
