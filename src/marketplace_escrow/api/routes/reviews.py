"""Review REST API routes.

Routes:
    POST   /api/v1/reviews               - Client reviews a completed request; releases escrow
    GET    /api/v1/reviews/{request_id}  - The review of a request
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import get_db_session, get_gateway, require_client
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.domain.identity import Actor
from marketplace_escrow.schemas.requests import CreateReviewRequest, ReviewResponse
from marketplace_escrow.services.escrow_ledger import EscrowLedger
from marketplace_escrow.services.review_service import ReviewService

router = APIRouter(prefix="/api/v1/reviews", tags=["Reviews"])


@router.post(
    "",
    response_model=ReviewResponse,
    status_code=201,
    summary="Review a completed request",
)
async def submit_review(
    body: CreateReviewRequest,
    client: Actor = Depends(require_client),
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> ReviewResponse:
    """One review per request; a second submission gets 409 ALREADY_REVIEWED."""
    svc = ReviewService(session, EscrowLedger(session, gateway))
    result = await svc.submit_review(body.request_id, client.actor_id, body.rating, body.comment)
    response = ReviewResponse.model_validate(result.review)
    response.release = result.release.value if result.release else None
    return response


@router.get(
    "/{request_id}",
    response_model=ReviewResponse,
    summary="Get the review of a request",
)
async def get_review(
    request_id: uuid.UUID,
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> ReviewResponse:
    svc = ReviewService(session, EscrowLedger(session, gateway))
    return ReviewResponse.model_validate(await svc.get_review(request_id))
