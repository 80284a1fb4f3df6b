"""Pydantic schemas for service requests, availability slots and reviews.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API
and database layers.
"""

from __future__ import annotations

import datetime as dt
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketplace_escrow.domain.enums import AssignmentPreference, ProviderType

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateServiceRequest(BaseModel):
    """Request body for creating a new service request."""

    provider_type: ProviderType = Field(
        ...,
        description="INDIVIDUAL professional or FIRM",
        examples=["INDIVIDUAL"],
    )
    provider_id: str | None = Field(
        default=None,
        max_length=64,
        description=(
            "Targeted provider. For INDIVIDUAL requests the professional; for "
            "SPECIFIC_CA firm requests the requested member."
        ),
    )
    firm_id: str | None = Field(default=None, max_length=64)
    assignment_preference: AssignmentPreference | None = Field(
        default=None,
        description="How a FIRM request picks its member (defaults to BEST_AVAILABLE)",
    )
    service_type: str | None = Field(default=None, max_length=64, examples=["gst_filing"])
    description: str | None = Field(default=None, max_length=5000)

    @model_validator(mode="after")
    def _firm_fields(self) -> CreateServiceRequest:
        if self.provider_type == ProviderType.FIRM and not self.firm_id:
            raise ValueError("firm_id is required for FIRM requests")
        return self


class ReasonRequest(BaseModel):
    """Optional free-text reason (reject, cancel, dispute hold)."""

    reason: str | None = Field(default=None, max_length=2000)


class CreateSlotRequest(BaseModel):
    date: dt.date
    start_time: dt.time
    end_time: dt.time


class BookSlotRequest(BaseModel):
    request_id: uuid.UUID


class CreateReviewRequest(BaseModel):
    request_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(default=None, max_length=5000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class ServiceRequestResponse(BaseModel):
    """Response schema for a service request."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    client_id: str
    provider_type: str
    provider_id: str | None
    firm_id: str | None
    assignment_preference: str | None
    assignment_method: str | None
    service_type: str | None
    description: str | None
    status: str
    cancel_reason: str | None
    cancelled_by: str | None
    created_at: datetime
    accepted_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    updated_at: datetime


class RequestStatusResponse(BaseModel):
    """Lightweight status check response."""

    request_id: uuid.UUID
    status: str
    provider_id: str | None
    allowed_events: list[str]


class CancellationResponse(BaseModel):
    request: ServiceRequestResponse
    refund_pending_payment_id: uuid.UUID | None = None


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider_id: str
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    is_booked: bool
    request_id: uuid.UUID | None
    booked_at: datetime | None


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_id: uuid.UUID
    client_id: str
    rating: int
    comment: str | None
    created_at: datetime
    release: str | None = Field(
        default=None,
        description="Outcome of the escrow release the review triggered",
    )
