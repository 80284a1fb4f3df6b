"""Database infrastructure - engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    close_db,
    init_db,
    session_scope,
)
from marketplace_escrow.infrastructure.database.exclusive import guarded_update
from marketplace_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    AvailabilitySlot,
    Base,
    DistributionShare,
    Firm,
    FirmMember,
    LedgerEntry,
    Payment,
    PaymentDistribution,
    Review,
    ServiceRequest,
)
from marketplace_escrow.infrastructure.database.repositories import (
    DistributionRepository,
    EventRepository,
    FirmRepository,
    LedgerRepository,
    PaymentRepository,
    RequestRepository,
    ReviewRepository,
    SlotRepository,
)

__all__ = [
    "Base",
    "AuditEvent",
    "AvailabilitySlot",
    "DistributionShare",
    "Firm",
    "FirmMember",
    "LedgerEntry",
    "Payment",
    "PaymentDistribution",
    "Review",
    "ServiceRequest",
    "DistributionRepository",
    "EventRepository",
    "FirmRepository",
    "LedgerRepository",
    "PaymentRepository",
    "RequestRepository",
    "ReviewRepository",
    "SlotRepository",
    "guarded_update",
    "build_engine",
    "build_session_factory",
    "init_db",
    "close_db",
    "session_scope",
]
