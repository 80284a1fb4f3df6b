"""Availability slot REST API routes.

Routes:
    POST   /api/v1/slots              - Provider publishes a slot
    POST   /api/v1/slots/{id}/book    - Book a slot for a request (exclusive)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import get_db_session, get_provider_identity
from marketplace_escrow.domain.identity import ProviderIdentity
from marketplace_escrow.schemas.requests import BookSlotRequest, CreateSlotRequest, SlotResponse
from marketplace_escrow.services.booking_service import AvailabilityBookingGuard

router = APIRouter(prefix="/api/v1/slots", tags=["Availability"])


@router.post(
    "",
    response_model=SlotResponse,
    status_code=201,
    summary="Publish an availability slot",
)
async def create_slot(
    body: CreateSlotRequest,
    identity: ProviderIdentity = Depends(get_provider_identity),
    session: AsyncSession = Depends(get_db_session),
) -> SlotResponse:
    guard = AvailabilityBookingGuard(session)
    slot = await guard.create_slot(identity.provider_id, body.date, body.start_time, body.end_time)
    return SlotResponse.model_validate(slot)


@router.post(
    "/{slot_id}/book",
    response_model=SlotResponse,
    summary="Book a slot",
)
async def book_slot(
    slot_id: uuid.UUID,
    body: BookSlotRequest,
    session: AsyncSession = Depends(get_db_session),
) -> SlotResponse:
    """Concurrent losers get 409 SLOT_ALREADY_BOOKED with the holding request."""
    guard = AvailabilityBookingGuard(session)
    slot = await guard.book_slot(slot_id, body.request_id)
    return SlotResponse.model_validate(slot)
