"""Domain exceptions for the marketplace escrow core.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.

Every exception carries a machine-readable ``code`` and a ``details`` dict so
callers can react to structured data (current pending count, the id of the
conflicting entity) instead of parsing messages.
"""

from __future__ import annotations

from typing import Any


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    def __init__(
        self,
        message: str,
        code: str = "MARKETPLACE_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


# --- Validation ---


class ValidationError(MarketplaceError):
    """Bad input. Never retryable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR", details=details)


class RequestLimitExceededError(ValidationError):
    """Raised when a client already holds the maximum of PENDING requests."""

    def __init__(self, client_id: str, current_count: int, limit: int) -> None:
        super().__init__(
            message=(
                f"You can only have {limit} pending requests at a time. "
                "Cancel one or wait for a provider to accept."
            ),
            details={"client_id": client_id, "current_count": current_count, "limit": limit},
        )
        self.code = "REQUEST_LIMIT_EXCEEDED"
        self.current_count = current_count
        self.limit = limit


class InvalidDistributionError(ValidationError):
    """Raised when distribution shares do not add up to 100%."""

    def __init__(self, message: str, total_percentage: float | None = None) -> None:
        super().__init__(message=message, details={"total_percentage": total_percentage})
        self.code = "INVALID_DISTRIBUTION"


class NotEligibleError(MarketplaceError):
    """Raised when an actor may not perform the requested action."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="NOT_ELIGIBLE", details=details)


# --- Not Found ---


class NotFoundError(MarketplaceError):
    """Base exception for missing entities."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            message=f"{entity} not found: {entity_id}",
            code=f"{entity.upper().replace(' ', '_')}_NOT_FOUND",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class RequestNotFoundError(NotFoundError):
    def __init__(self, request_id: str) -> None:
        super().__init__("Service request", request_id)


class SlotNotFoundError(NotFoundError):
    def __init__(self, slot_id: str) -> None:
        super().__init__("Availability slot", slot_id)


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_id: str) -> None:
        super().__init__("Payment", payment_id)


class FirmNotFoundError(NotFoundError):
    def __init__(self, firm_id: str) -> None:
        super().__init__("Firm", firm_id)


class DistributionShareNotFoundError(NotFoundError):
    def __init__(self, share_id: str) -> None:
        super().__init__("Distribution share", share_id)


# --- Race losses ---


class RaceLostError(MarketplaceError):
    """Another actor legitimately won an exclusive transition.

    An expected outcome of contention, not a system fault: it is reported to
    the caller as "someone else already did this" and never as a 5xx.
    """


class AlreadyAcceptedError(RaceLostError):
    """Raised when a request was already accepted by another provider."""

    def __init__(self, request_id: str, status: str, bound_provider_id: str | None) -> None:
        super().__init__(
            message=f"Service request already accepted: {request_id}",
            code="ALREADY_ACCEPTED",
            details={
                "request_id": request_id,
                "status": status,
                "bound_provider_id": bound_provider_id,
            },
        )


class SlotAlreadyBookedError(RaceLostError):
    """Raised when an availability slot was already booked."""

    def __init__(self, slot_id: str, booked_request_id: str | None) -> None:
        super().__init__(
            message=f"Availability slot already booked: {slot_id}",
            code="SLOT_ALREADY_BOOKED",
            details={"slot_id": slot_id, "booked_request_id": booked_request_id},
        )


class DuplicatePaymentError(RaceLostError):
    """Raised when the request already has an active payment."""

    def __init__(
        self,
        request_id: str,
        payment_id: str | None,
        gateway_order_ref: str | None = None,
        status: str | None = None,
    ) -> None:
        super().__init__(
            message=f"Payment already exists for service request: {request_id}",
            code="DUPLICATE_PAYMENT",
            details={
                "request_id": request_id,
                "payment_id": payment_id,
                "gateway_order_ref": gateway_order_ref,
                "status": status,
            },
        )


class AlreadyReviewedError(RaceLostError):
    """Raised when a review already exists for the request."""

    def __init__(self, request_id: str) -> None:
        super().__init__(
            message=f"Review already exists for service request: {request_id}",
            code="ALREADY_REVIEWED",
            details={"request_id": request_id},
        )


class DistributionExistsError(RaceLostError):
    """Raised when the payment already has a distribution attached."""

    def __init__(self, payment_id: str, distribution_id: str | None) -> None:
        super().__init__(
            message=f"Distribution already exists for payment: {payment_id}",
            code="DISTRIBUTION_EXISTS",
            details={"payment_id": payment_id, "distribution_id": distribution_id},
        )


# --- State Machine Errors ---


class InvalidStateTransitionError(MarketplaceError):
    """Raised when an attempted state transition is not allowed.

    Example: COMPLETED -> ACCEPTED (terminal states never move again)
    """

    def __init__(self, current_state: str, attempted: str, entity_id: str | None = None) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted}",
            code="INVALID_STATE_TRANSITION",
            details={"current_state": current_state, "attempted": attempted, "entity_id": entity_id},
        )
        self.current_state = current_state
        self.attempted_state = attempted


# --- Escrow / Payment Errors ---


class SignatureInvalidError(MarketplaceError):
    """Gateway signature mismatch. A tamper signal: logged, audited, never retried."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(
            message=f"Invalid payment signature for payment: {payment_id}",
            code="SIGNATURE_INVALID",
            details={"payment_id": payment_id},
        )


class DistributionNotApprovedError(MarketplaceError):
    """Raised when distributing a firm payment whose shares were never finalized."""

    def __init__(self, payment_id: str, distribution_id: str | None = None) -> None:
        super().__init__(
            message=f"Distribution not approved for payment: {payment_id}",
            code="DISTRIBUTION_NOT_APPROVED",
            details={"payment_id": payment_id, "distribution_id": distribution_id},
        )


class GatewayError(MarketplaceError):
    """Raised when the payment gateway rejects or fails a call. Retryable."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        super().__init__(message=message, code="GATEWAY_ERROR", details={"payment_id": payment_id})
        self.payment_id = payment_id


class GatewayTimeoutError(GatewayError):
    """Raised when the gateway did not answer in time. Retry with the same request."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        super().__init__(message=message, payment_id=payment_id)
        self.code = "GATEWAY_TIMEOUT"
