"""Pydantic API schemas."""

from marketplace_escrow.schemas.common import AuditEventResponse, ErrorResponse, HealthResponse
from marketplace_escrow.schemas.payments import (
    AutoReleaseReportResponse,
    AutoReleaseRunRequest,
    CreateDistributionRequest,
    CreateOrderRequest,
    DistributionResponse,
    DistributionShareResponse,
    LedgerEntryResponse,
    PaymentDetailResponse,
    PaymentResponse,
    ShareInput,
    VerifyPaymentRequest,
    WebhookResponse,
)
from marketplace_escrow.schemas.requests import (
    BookSlotRequest,
    CancellationResponse,
    CreateReviewRequest,
    CreateServiceRequest,
    CreateSlotRequest,
    ReasonRequest,
    RequestStatusResponse,
    ReviewResponse,
    ServiceRequestResponse,
    SlotResponse,
)

__all__ = [
    "AuditEventResponse",
    "AutoReleaseReportResponse",
    "AutoReleaseRunRequest",
    "BookSlotRequest",
    "CancellationResponse",
    "CreateDistributionRequest",
    "CreateOrderRequest",
    "CreateReviewRequest",
    "CreateServiceRequest",
    "CreateSlotRequest",
    "DistributionResponse",
    "DistributionShareResponse",
    "ErrorResponse",
    "HealthResponse",
    "LedgerEntryResponse",
    "PaymentDetailResponse",
    "PaymentResponse",
    "ReasonRequest",
    "RequestStatusResponse",
    "ReviewResponse",
    "ServiceRequestResponse",
    "ShareInput",
    "SlotResponse",
    "VerifyPaymentRequest",
    "WebhookResponse",
]
