"""Pydantic schemas for payments, firm distributions and the release sweep."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import DisputeOutcome

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateOrderRequest(BaseModel):
    """Request body for creating the payment order of a request."""

    request_id: uuid.UUID
    amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
        description="Gross amount the client pays, in major currency units",
        examples=[1500.00],
    )


class VerifyPaymentRequest(BaseModel):
    """Checkout result handed back by the gateway's client-side widget."""

    gateway_payment_ref: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=128)


class ShareInput(BaseModel):
    member_id: str = Field(..., min_length=1, max_length=64)
    percentage: float = Field(..., gt=0, le=100)


class CreateDistributionRequest(BaseModel):
    shares: list[ShareInput] | None = Field(
        default=None,
        description="Custom split; omitted, the firm's default template is used",
    )


class ResolveDisputeRequest(BaseModel):
    outcome: DisputeOutcome
    note: str | None = Field(default=None, max_length=500)


class AutoReleaseRunRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=10_000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class PaymentResponse(BaseModel):
    """Response schema for a payment (escrow ledger entry)."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_id: uuid.UUID
    amount: Decimal
    currency: str
    platform_fee_percent: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    status: str
    gateway_order_ref: str | None
    gateway_payment_ref: str | None
    gateway_signature_verified: bool
    escrow_held_at: datetime | None
    auto_release_at: datetime | None
    released_at: datetime | None
    release_trigger: str | None
    distributed_at: datetime | None
    refund_requested_at: datetime | None
    refunded_at: datetime | None
    gateway_refund_ref: str | None
    failed_at: datetime | None
    failure_reason: str | None
    distribution_id: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    payment_id: uuid.UUID
    beneficiary_id: str
    entry_type: str
    amount: Decimal
    reference: str
    created_at: datetime


class PaymentDetailResponse(BaseModel):
    payment: PaymentResponse
    ledger_entries: list[LedgerEntryResponse]


class DistributionShareResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    member_id: str
    percentage: float
    amount: Decimal
    approved_at: datetime | None
    credited_at: datetime | None


class DistributionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    firm_id: str
    request_id: uuid.UUID
    total_amount: Decimal
    distributable_amount: Decimal
    is_approved: bool
    approved_at: datetime | None
    is_distributed: bool
    distributed_at: datetime | None
    shares: list[DistributionShareResponse]


class WebhookResponse(BaseModel):
    status: str
    event: str | None = None
    payment_id: uuid.UUID | None = None


class AutoReleaseReportResponse(BaseModel):
    scanned: int
    released: int
    already_done: int
    failed: int
