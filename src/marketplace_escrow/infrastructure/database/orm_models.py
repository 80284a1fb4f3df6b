"""SQLAlchemy 2.0 ORM models for the marketplace escrow core.

Core tables:
    1. service_requests       - Engagements between a client and a provider.
    2. availability_slots     - Bookable provider time windows.
    3. payments               - Escrow ledger entry, one active per request.
    4. payment_distributions  - Firm payment split (+ distribution_shares).
    5. reviews                - One per completed request; triggers release.
    6. ledger_entries         - Credits to providers and firm members.
    7. audit_events           - Append-only log of every transition.

Read model used for assignment:
    8. firms / firm_members

Design decisions:
    - UUIDs as primary keys for core entities; external actor ids are strings.
    - Decimal for money (no floating point rounding errors).
    - CHECK constraints on status columns to reject unknown values at DB level.
    - Partial unique index on payments(request_id) for non-terminal rows: the
      database, not a pre-check, guarantees one active payment per request.
    - Unique ledger_entries.reference: a credit can never be applied twice.
    - Payment -> PaymentDistribution is one-directional; the distribution is
      found from a request through the indexed request_id column.
"""

from __future__ import annotations

import datetime as dt
import uuid
from datetime import UTC, datetime, time
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops the offset on the way in; values read back are re-tagged
    as UTC so comparisons in Python never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. service_requests
# ---------------------------------------------------------------------------
class ServiceRequest(Base):
    """A unit of work requested by a client from an individual or a firm."""

    __tablename__ = "service_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="INDIVIDUAL or FIRM",
    )
    provider_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Bound provider (or targeted provider while PENDING)",
    )
    firm_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("firms.id"),
        nullable=True,
        default=None,
    )
    assignment_preference: Mapped[str | None] = mapped_column(String(20), nullable=True)
    assignment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # --- Work Definition ---
    service_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Current lifecycle state (guarded by RequestStateMachine)",
    )
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --- Timestamps (part of the contract, one per transition) ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ACCEPTED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name="ck_request_valid_status",
        ),
        CheckConstraint(
            "provider_type IN ('INDIVIDUAL', 'FIRM')",
            name="ck_request_provider_type",
        ),
        Index("idx_request_client_status", "client_id", "status"),
        Index("idx_request_provider_status", "provider_id", "status"),
        Index("idx_request_firm", "firm_id"),
    )

    def __repr__(self) -> str:
        return f"<ServiceRequest id={self.id} status={self.status} provider={self.provider_id}>"


# ---------------------------------------------------------------------------
# 2. availability_slots
# ---------------------------------------------------------------------------
class AvailabilitySlot(Base):
    """A provider's bookable time window. is_booked flips to True exactly once."""

    __tablename__ = "availability_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)

    is_booked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    request_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("service_requests.id"),
        nullable=True,
        default=None,
        comment="The request holding this slot (set on booking)",
    )
    booked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_slot_time_order"),
        Index("idx_slot_provider_date", "provider_id", "date"),
    )

    def __repr__(self) -> str:
        return f"<AvailabilitySlot id={self.id} date={self.date} booked={self.is_booked}>"


# ---------------------------------------------------------------------------
# 3. payments
# ---------------------------------------------------------------------------
class Payment(Base):
    """Escrow ledger entry for one service request."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("service_requests.id"),
        nullable=False,
    )

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    platform_fee_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    provider_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Current ledger state (guarded by PaymentStateMachine)",
    )

    # --- Gateway ---
    idempotency_key: Mapped[str] = mapped_column(
        String(80),
        nullable=False,
        unique=True,
        comment="Sent to the gateway as the order receipt; stable across retries",
    )
    order_claimed_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Lease held by the caller currently talking to the gateway",
    )
    gateway_order_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_payment_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_signature_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    gateway_refund_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --- Escrow timestamps (autoReleaseAt drives the sweep) ---
    escrow_held_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    auto_release_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    release_trigger: Mapped[str | None] = mapped_column(String(16), nullable=True)
    distributed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refund_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Firm distribution (one-directional ownership) ---
    distribution_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("payment_distributions.id"),
        nullable=True,
        default=None,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'ESCROW_HELD', 'RELEASED', "
            "'DISTRIBUTED', 'FAILED', 'REFUND_PENDING', 'REFUNDED')",
            name="ck_payment_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        Index(
            "uq_payment_active_request",
            "request_id",
            unique=True,
            postgresql_where=text("status NOT IN ('FAILED', 'REFUNDED')"),
            sqlite_where=text("status NOT IN ('FAILED', 'REFUNDED')"),
        ),
        Index("idx_payment_release_due", "status", "auto_release_at"),
    )

    def __repr__(self) -> str:
        return f"<Payment id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 4. payment_distributions / distribution_shares
# ---------------------------------------------------------------------------
class PaymentDistribution(Base):
    """Split of a firm payment across its members. Immutable once approved."""

    __tablename__ = "payment_distributions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    firm_id: Mapped[str] = mapped_column(String(64), ForeignKey("firms.id"), nullable=False)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("service_requests.id"),
        nullable=False,
        comment="Reverse-lookup index; not an ownership pointer",
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    distributable_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    is_distributed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    distributed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    shares: Mapped[list[DistributionShare]] = relationship(
        "DistributionShare",
        back_populates="distribution",
        order_by="DistributionShare.member_id",
        lazy="selectin",
    )

    __table_args__ = (Index("idx_distribution_request", "request_id"),)

    def __repr__(self) -> str:
        return f"<PaymentDistribution id={self.id} approved={self.is_approved}>"


class DistributionShare(Base):
    """One member's share of a firm distribution. Credited exactly once."""

    __tablename__ = "distribution_shares"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    distribution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payment_distributions.id"),
        nullable=False,
    )
    member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    percentage: Mapped[float] = mapped_column(Float, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    distribution: Mapped[PaymentDistribution] = relationship(
        "PaymentDistribution",
        back_populates="shares",
    )

    __table_args__ = (
        UniqueConstraint("distribution_id", "member_id", name="uq_share_member"),
        CheckConstraint("percentage > 0 AND percentage <= 100", name="ck_share_percentage"),
    )

    def __repr__(self) -> str:
        return f"<DistributionShare member={self.member_id} pct={self.percentage}>"


# ---------------------------------------------------------------------------
# 5. reviews
# ---------------------------------------------------------------------------
class Review(Base):
    """Client review of a completed request. Exactly one per request."""

    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("service_requests.id"),
        nullable=False,
        unique=True,
    )
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating"),)


# ---------------------------------------------------------------------------
# 6. ledger_entries
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    """A credit to a provider or firm member."""

    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("payments.id"), nullable=False)
    beneficiary_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reference: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        comment="release:<payment_id> or share:<share_id>",
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_ledger_beneficiary", "beneficiary_id"),)


# ---------------------------------------------------------------------------
# 7. audit_events (Append-Only)
# ---------------------------------------------------------------------------
class AuditEvent(Base):
    """Immutable record of a transition on a request, slot, or payment.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(24), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONVariant,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent {self.entity_type}:{self.entity_id} {self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 8. firms / firm_members (read model)
# ---------------------------------------------------------------------------
class Firm(Base):
    __tablename__ = "firms"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    members: Mapped[list[FirmMember]] = relationship(
        "FirmMember",
        back_populates="firm",
        order_by="FirmMember.member_id",
        lazy="selectin",
    )


class FirmMember(Base):
    __tablename__ = "firm_members"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    firm_id: Mapped[str] = mapped_column(String(64), ForeignKey("firms.id"), nullable=False)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="MEMBER")
    specializations: Mapped[list] = mapped_column(JSONVariant, nullable=False, default=list)
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    default_share_percent: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
        comment="Template share used when a distribution has no custom split",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    firm: Mapped[Firm] = relationship("Firm", back_populates="members")

    __table_args__ = (UniqueConstraint("firm_id", "member_id", name="uq_firm_member"),)

    def __repr__(self) -> str:
        return f"<FirmMember firm={self.firm_id} member={self.member_id} role={self.role}>"


event.listen(ServiceRequest, "before_update", _set_updated_at)
event.listen(Payment, "before_update", _set_updated_at)
