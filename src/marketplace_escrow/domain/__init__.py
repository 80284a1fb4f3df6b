"""Domain layer - pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.enums import (
    AssignmentPreference,
    EventType,
    PaymentStatus,
    ProviderType,
    RequestStatus,
)
from marketplace_escrow.domain.events import DomainEvent, NotificationDispatcher
from marketplace_escrow.domain.exceptions import (
    AlreadyAcceptedError,
    DuplicatePaymentError,
    InvalidStateTransitionError,
    MarketplaceError,
    NotFoundError,
    RaceLostError,
    SignatureInvalidError,
    SlotAlreadyBookedError,
)
from marketplace_escrow.domain.gateway_protocol import GatewayOrder, PaymentGateway
from marketplace_escrow.domain.identity import Actor, ProviderIdentity, default_eligibility
from marketplace_escrow.domain.state_machine import (
    PaymentStateMachine,
    RequestStateMachine,
    validate_transition,
)

__all__ = [
    "AssignmentPreference",
    "EventType",
    "PaymentStatus",
    "ProviderType",
    "RequestStatus",
    "DomainEvent",
    "NotificationDispatcher",
    "AlreadyAcceptedError",
    "DuplicatePaymentError",
    "InvalidStateTransitionError",
    "MarketplaceError",
    "NotFoundError",
    "RaceLostError",
    "SignatureInvalidError",
    "SlotAlreadyBookedError",
    "GatewayOrder",
    "PaymentGateway",
    "Actor",
    "ProviderIdentity",
    "default_eligibility",
    "PaymentStateMachine",
    "RequestStateMachine",
    "validate_transition",
]
