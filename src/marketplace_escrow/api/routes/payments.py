"""Payment (escrow ledger) REST API routes.

Routes:
    POST   /api/v1/payments/orders               - Create the request's payment order
    POST   /api/v1/payments/webhook              - Gateway webhook (signed)
    GET    /api/v1/payments/{id}                 - Payment with its ledger credits
    POST   /api/v1/payments/{id}/verify          - Verify checkout signature -> ESCROW_HELD
    POST   /api/v1/payments/{id}/dispute-hold    - Stop the scheduled release (admin)
    POST   /api/v1/payments/{id}/resolve-dispute - Release or refund a disputed payment (admin)
    POST   /api/v1/payments/{id}/refund          - Execute a pending refund (admin)
    POST   /api/v1/payments/{id}/distribution    - Attach the firm member split
    GET    /api/v1/payments/{id}/distribution    - Get the firm member split
    POST   /api/v1/payments/{id}/distribute      - Credit an approved split (admin)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import get_db_session, get_gateway, require_admin
from marketplace_escrow.domain.exceptions import NotFoundError
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.domain.identity import Actor
from marketplace_escrow.schemas.payments import (
    CreateDistributionRequest,
    CreateOrderRequest,
    DistributionResponse,
    LedgerEntryResponse,
    PaymentDetailResponse,
    PaymentResponse,
    ResolveDisputeRequest,
    VerifyPaymentRequest,
    WebhookResponse,
)
from marketplace_escrow.schemas.requests import ReasonRequest
from marketplace_escrow.services.escrow_ledger import EscrowLedger

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])


# ---------------------------------------------------------------------------
# Order and verification
# ---------------------------------------------------------------------------


@router.post(
    "/orders",
    response_model=PaymentResponse,
    status_code=201,
    summary="Create the payment order for a request",
)
async def create_order(
    body: CreateOrderRequest,
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    """One active payment per request; a second attempt gets 409 DUPLICATE_PAYMENT.

    A 504 leaves the PENDING payment in place and retrying is safe.
    """
    ledger = EscrowLedger(session, gateway)
    payment = await ledger.create_order(body.request_id, body.amount)
    return PaymentResponse.model_validate(payment)


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Gateway webhook",
)
async def gateway_webhook(
    request: Request,
    x_razorpay_signature: str = Header(...),
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> WebhookResponse:
    body = await request.body()
    ledger = EscrowLedger(session, gateway)
    result = await ledger.handle_webhook(body, x_razorpay_signature)
    return WebhookResponse(status=result.status, event=result.event, payment_id=result.payment_id)


@router.post(
    "/{payment_id}/verify",
    response_model=PaymentResponse,
    summary="Verify the checkout signature",
)
async def verify_payment(
    payment_id: uuid.UUID,
    body: VerifyPaymentRequest,
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    """PENDING/PROCESSING -> ESCROW_HELD. A bad signature is 400 and never retried."""
    ledger = EscrowLedger(session, gateway)
    payment = await ledger.verify_payment(payment_id, body.gateway_payment_ref, body.signature)
    return PaymentResponse.model_validate(payment)


# ---------------------------------------------------------------------------
# Administrative
# ---------------------------------------------------------------------------


@router.post(
    "/{payment_id}/dispute-hold",
    response_model=PaymentResponse,
    summary="Hold escrow for a dispute",
)
async def dispute_hold(
    payment_id: uuid.UUID,
    body: ReasonRequest | None = None,
    admin: Actor = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    ledger = EscrowLedger(session, gateway)
    payment = await ledger.hold_for_dispute(payment_id, admin, body.reason if body else None)
    return PaymentResponse.model_validate(payment)


@router.post(
    "/{payment_id}/resolve-dispute",
    response_model=PaymentResponse,
    summary="Settle a disputed payment",
)
async def resolve_dispute(
    payment_id: uuid.UUID,
    body: ResolveDisputeRequest,
    admin: Actor = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    """RELEASE pays the provider; REFUND leaves the payment REFUND_PENDING for /refund."""
    ledger = EscrowLedger(session, gateway)
    payment = await ledger.resolve_dispute(payment_id, admin, body.outcome, body.note)
    return PaymentResponse.model_validate(payment)


@router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    summary="Execute a pending refund",
)
async def execute_refund(
    payment_id: uuid.UUID,
    admin: Actor = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    """REFUND_PENDING -> REFUNDED through the gateway. Already refunded is a no-op."""
    ledger = EscrowLedger(session, gateway)
    payment = await ledger.execute_refund(payment_id, admin)
    return PaymentResponse.model_validate(payment)


# ---------------------------------------------------------------------------
# Firm distribution
# ---------------------------------------------------------------------------


@router.post(
    "/{payment_id}/distribution",
    response_model=DistributionResponse,
    status_code=201,
    summary="Attach the firm member split",
)
async def create_distribution(
    payment_id: uuid.UUID,
    body: CreateDistributionRequest | None = None,
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> DistributionResponse:
    shares = None
    if body is not None and body.shares is not None:
        shares = [(s.member_id, s.percentage) for s in body.shares]
    ledger = EscrowLedger(session, gateway)
    distribution = await ledger.create_distribution(payment_id, shares)
    return DistributionResponse.model_validate(distribution)


@router.get(
    "/{payment_id}/distribution",
    response_model=DistributionResponse,
    summary="Get the firm member split",
)
async def get_distribution(
    payment_id: uuid.UUID,
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> DistributionResponse:
    ledger = EscrowLedger(session, gateway)
    distribution = await ledger.get_distribution(payment_id)
    if distribution is None:
        raise NotFoundError("Distribution", str(payment_id))
    return DistributionResponse.model_validate(distribution)


@router.post(
    "/{payment_id}/distribute",
    response_model=PaymentResponse,
    summary="Credit an approved firm split",
)
async def distribute(
    payment_id: uuid.UUID,
    _admin: Actor = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    """RELEASED -> DISTRIBUTED. 409 DISTRIBUTION_NOT_APPROVED until every member approved."""
    ledger = EscrowLedger(session, gateway)
    payment = await ledger.distribute(payment_id)
    return PaymentResponse.model_validate(payment)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{payment_id}",
    response_model=PaymentDetailResponse,
    summary="Get payment details",
)
async def get_payment(
    payment_id: uuid.UUID,
    gateway: PaymentGateway = Depends(get_gateway),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentDetailResponse:
    ledger = EscrowLedger(session, gateway)
    payment = await ledger.get_payment(payment_id)
    entries = await ledger.get_ledger_entries(payment_id)
    return PaymentDetailResponse(
        payment=PaymentResponse.model_validate(payment),
        ledger_entries=[LedgerEntryResponse.model_validate(e) for e in entries],
    )
