"""Domain enumerations for the marketplace escrow core.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class RequestStatus(enum.StrEnum):
    """Lifecycle states of a service request.

    Transitions are enforced by RequestStateMachine.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(enum.StrEnum):
    """Escrow ledger states of a payment.

    FAILED and REFUNDED are the only states that free the request for a
    new payment attempt.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    ESCROW_HELD = "ESCROW_HELD"
    RELEASED = "RELEASED"
    DISTRIBUTED = "DISTRIBUTED"
    FAILED = "FAILED"
    REFUND_PENDING = "REFUND_PENDING"
    REFUNDED = "REFUNDED"


# Payments in these states still occupy the request's single payment slot.
ACTIVE_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.ESCROW_HELD,
        PaymentStatus.RELEASED,
        PaymentStatus.DISTRIBUTED,
        PaymentStatus.REFUND_PENDING,
    }
)

# Money has been collected but not yet released to anyone.
IN_FLIGHT_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.ESCROW_HELD}
)


class ProviderType(enum.StrEnum):
    INDIVIDUAL = "INDIVIDUAL"
    FIRM = "FIRM"


class AssignmentPreference(enum.StrEnum):
    """How a firm-bound request picks the member who does the work."""

    SPECIFIC_CA = "SPECIFIC_CA"
    SENIOR_ONLY = "SENIOR_ONLY"
    BEST_AVAILABLE = "BEST_AVAILABLE"


class AssignmentMethod(enum.StrEnum):
    CLIENT_SPECIFIED = "CLIENT_SPECIFIED"
    PROVIDER_ACCEPTED = "PROVIDER_ACCEPTED"
    AUTO = "AUTO"


class MemberRole(enum.StrEnum):
    MEMBER = "MEMBER"
    SENIOR = "SENIOR"
    ADMIN = "ADMIN"


SENIOR_ROLES = frozenset({MemberRole.SENIOR, MemberRole.ADMIN})


class ActorRole(enum.StrEnum):
    CLIENT = "CLIENT"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class ReleaseTrigger(enum.StrEnum):
    REVIEW = "REVIEW"
    SCHEDULE = "SCHEDULE"
    DISPUTE = "DISPUTE"


class DisputeOutcome(enum.StrEnum):
    """How an administrator settles a payment held for a dispute."""

    RELEASE = "RELEASE"
    REFUND = "REFUND"


class LedgerEntryType(enum.StrEnum):
    PROVIDER_PAYOUT = "PROVIDER_PAYOUT"
    DISTRIBUTION_SHARE = "DISTRIBUTION_SHARE"


class EventType(enum.StrEnum):
    """Types of domain events and audit records.

    Every state transition produces exactly one audit record; the public
    subset is also handed to the notification dispatcher.
    """

    # Request lifecycle
    REQUEST_CREATED = "RequestCreated"
    REQUEST_ACCEPTED = "RequestAccepted"
    REQUEST_REJECTED = "RequestRejected"
    REQUEST_STARTED = "RequestStarted"
    REQUEST_COMPLETED = "RequestCompleted"
    REQUEST_CANCELLED = "RequestCancelled"

    # Availability
    SLOT_BOOKED = "SlotBooked"

    # Escrow ledger
    PAYMENT_ORDER_CREATED = "PaymentOrderCreated"
    PAYMENT_AUTHORIZED = "PaymentAuthorized"
    PAYMENT_ESCROWED = "PaymentEscrowed"
    PAYMENT_RELEASED = "PaymentReleased"
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_REFUND_PENDING = "PaymentRefundPending"
    PAYMENT_REFUNDED = "PaymentRefunded"
    PAYMENT_DISPUTE_HOLD = "PaymentDisputeHold"
    PAYMENT_DISPUTE_RESOLVED = "PaymentDisputeResolved"
    SIGNATURE_REJECTED = "SignatureRejected"

    # Firm distribution
    DISTRIBUTION_CREATED = "DistributionCreated"
    DISTRIBUTION_APPROVED = "DistributionApproved"
    DISTRIBUTION_APPLIED = "DistributionApplied"

    # Reviews
    REVIEW_SUBMITTED = "ReviewSubmitted"
