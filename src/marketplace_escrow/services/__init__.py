"""Application services - use case orchestration."""

from marketplace_escrow.services.assignment_service import AssignmentResolver
from marketplace_escrow.services.auto_release import AutoReleaseReport, AutoReleaseScheduler
from marketplace_escrow.services.booking_service import AvailabilityBookingGuard
from marketplace_escrow.services.escrow_ledger import EscrowLedger, ReleaseOutcome, WebhookResult
from marketplace_escrow.services.lifecycle_service import (
    CancellationResult,
    RequestLifecycleManager,
    RequestSpec,
)
from marketplace_escrow.services.review_service import ReviewResult, ReviewService

__all__ = [
    "AssignmentResolver",
    "AutoReleaseReport",
    "AutoReleaseScheduler",
    "AvailabilityBookingGuard",
    "CancellationResult",
    "EscrowLedger",
    "ReleaseOutcome",
    "RequestLifecycleManager",
    "RequestSpec",
    "ReviewResult",
    "ReviewService",
    "WebhookResult",
]
