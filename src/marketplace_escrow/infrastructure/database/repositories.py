"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Exclusive *transitions* do not live here: services express them through
``guarded_update`` so the expected prior state sits next to the business
rule that requires it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from marketplace_escrow.domain.enums import (
    ACTIVE_PAYMENT_STATUSES,
    IN_FLIGHT_PAYMENT_STATUSES,
    PaymentStatus,
    RequestStatus,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    AvailabilitySlot,
    DistributionShare,
    Firm,
    FirmMember,
    LedgerEntry,
    Payment,
    PaymentDistribution,
    Review,
    ServiceRequest,
)

if TYPE_CHECKING:
    import uuid
    from datetime import date, datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import EventType, LedgerEntryType


class RequestRepository:
    """Data access for service requests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, request: ServiceRequest) -> ServiceRequest:
        """Insert a new service request."""
        self._session.add(request)
        await self._session.flush()
        return request

    async def get_by_id(self, request_id: uuid.UUID) -> ServiceRequest | None:
        """Fetch a request by its UUID."""
        result = await self._session.execute(
            select(ServiceRequest).where(ServiceRequest.id == request_id)
        )
        return result.scalar_one_or_none()

    async def lock(self, request_id: uuid.UUID) -> ServiceRequest | None:
        """SELECT ... FOR UPDATE; a cancellation and a new order wait on each other.

        SQLite has no row locks: there BEGIN IMMEDIATE already serialises
        the whole transaction.
        """
        result = await self._session.execute(
            select(ServiceRequest)
            .where(ServiceRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock_client(self, client_id: str) -> None:
        """Hold a per-client lock until the transaction ends.

        PostgreSQL takes a transaction-scoped advisory lock keyed on the
        client id, so pending-request counts cannot interleave. SQLite
        needs nothing extra under BEGIN IMMEDIATE.
        """
        if self._session.get_bind().dialect.name != "postgresql":
            return
        await self._session.execute(
            select(func.pg_advisory_xact_lock(func.hashtext(client_id)))
        )

    async def count_pending_for_client(self, client_id: str) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(ServiceRequest)
            .where(
                ServiceRequest.client_id == client_id,
                ServiceRequest.status == RequestStatus.PENDING.value,
            )
        )
        return int(result.scalar_one())

    async def count_active_by_provider(self, provider_ids: list[str]) -> dict[str, int]:
        """Workload per provider: requests ACCEPTED or IN_PROGRESS."""
        if not provider_ids:
            return {}
        result = await self._session.execute(
            select(ServiceRequest.provider_id, func.count())
            .where(
                ServiceRequest.provider_id.in_(provider_ids),
                ServiceRequest.status.in_(
                    [RequestStatus.ACCEPTED.value, RequestStatus.IN_PROGRESS.value]
                ),
            )
            .group_by(ServiceRequest.provider_id)
        )
        counts = {provider_id: 0 for provider_id in provider_ids}
        for provider_id, count in result.all():
            counts[provider_id] = int(count)
        return counts


class SlotRepository:
    """Data access for availability slots."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, slot: AvailabilitySlot) -> AvailabilitySlot:
        self._session.add(slot)
        await self._session.flush()
        return slot

    async def get_by_id(self, slot_id: uuid.UUID) -> AvailabilitySlot | None:
        result = await self._session.execute(
            select(AvailabilitySlot).where(AvailabilitySlot.id == slot_id)
        )
        return result.scalar_one_or_none()

    async def get_for_provider_on(self, provider_id: str, day: date) -> list[AvailabilitySlot]:
        """Fetch a provider's slots on one date, earliest first."""
        result = await self._session.execute(
            select(AvailabilitySlot)
            .where(AvailabilitySlot.provider_id == provider_id, AvailabilitySlot.date == day)
            .order_by(AvailabilitySlot.start_time.asc())
        )
        return list(result.scalars().all())


class PaymentRepository:
    """Data access for payments (the escrow ledger)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def try_create(self, payment: Payment) -> bool:
        """Insert a payment inside a savepoint.

        Returns False when the partial unique index on request_id rejects the
        row because another active payment already exists. The outer
        transaction stays usable either way.
        """
        try:
            async with self._session.begin_nested():
                self._session.add(payment)
        except IntegrityError:
            return False
        return True

    async def get_by_id(self, payment_id: uuid.UUID) -> Payment | None:
        result = await self._session.execute(select(Payment).where(Payment.id == payment_id))
        return result.scalar_one_or_none()

    async def get_active_for_request(self, request_id: uuid.UUID) -> Payment | None:
        """The payment currently occupying the request's single payment slot."""
        result = await self._session.execute(
            select(Payment)
            .where(
                Payment.request_id == request_id,
                Payment.status.in_([s.value for s in ACTIVE_PAYMENT_STATUSES]),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_in_flight_for_request(self, request_id: uuid.UUID) -> list[Payment]:
        """Payments that still hold (or are about to hold) client money."""
        result = await self._session.execute(
            select(Payment).where(
                Payment.request_id == request_id,
                Payment.status.in_([s.value for s in IN_FLIGHT_PAYMENT_STATUSES]),
            )
        )
        return list(result.scalars().all())

    async def get_all_for_request(self, request_id: uuid.UUID) -> list[Payment]:
        result = await self._session.execute(
            select(Payment)
            .where(Payment.request_id == request_id)
            .order_by(Payment.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_by_distribution(self, distribution_id: uuid.UUID) -> Payment | None:
        result = await self._session.execute(
            select(Payment).where(Payment.distribution_id == distribution_id)
        )
        return result.scalar_one_or_none()

    async def get_by_order_ref(self, order_ref: str) -> Payment | None:
        result = await self._session.execute(
            select(Payment).where(Payment.gateway_order_ref == order_ref)
        )
        return result.scalar_one_or_none()

    async def get_due_for_release(self, now: datetime, limit: int) -> list[uuid.UUID]:
        """IDs of ESCROW_HELD payments whose hold period has elapsed, oldest first."""
        result = await self._session.execute(
            select(Payment.id)
            .where(
                Payment.status == PaymentStatus.ESCROW_HELD.value,
                Payment.auto_release_at.is_not(None),
                Payment.auto_release_at <= now,
            )
            .order_by(Payment.auto_release_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_overdue_for_release(self, cutoff: datetime) -> int:
        """Held payments whose release date is before ``cutoff`` (sweep backlog)."""
        result = await self._session.execute(
            select(func.count(Payment.id)).where(
                Payment.status == PaymentStatus.ESCROW_HELD.value,
                Payment.auto_release_at.is_not(None),
                Payment.auto_release_at < cutoff,
            )
        )
        return int(result.scalar_one())


class DistributionRepository:
    """Data access for firm payment distributions and their shares."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self, distribution: PaymentDistribution, shares: list[DistributionShare]
    ) -> PaymentDistribution:
        self._session.add(distribution)
        await self._session.flush()
        for share in shares:
            share.distribution_id = distribution.id
            self._session.add(share)
        await self._session.flush()
        return distribution

    async def get_by_id(self, distribution_id: uuid.UUID) -> PaymentDistribution | None:
        result = await self._session.execute(
            select(PaymentDistribution)
            .where(PaymentDistribution.id == distribution_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock(self, distribution_id: uuid.UUID) -> PaymentDistribution | None:
        """SELECT ... FOR UPDATE; serialises share approvals per distribution.

        SQLite has no row locks: there BEGIN IMMEDIATE already serialises
        the whole transaction.
        """
        result = await self._session.execute(
            select(PaymentDistribution)
            .where(PaymentDistribution.id == distribution_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_request(self, request_id: uuid.UUID) -> list[PaymentDistribution]:
        result = await self._session.execute(
            select(PaymentDistribution)
            .where(PaymentDistribution.request_id == request_id)
            .order_by(PaymentDistribution.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_share(self, share_id: uuid.UUID) -> DistributionShare | None:
        result = await self._session.execute(
            select(DistributionShare)
            .where(DistributionShare.id == share_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_shares(self, distribution_id: uuid.UUID) -> list[DistributionShare]:
        result = await self._session.execute(
            select(DistributionShare)
            .where(DistributionShare.distribution_id == distribution_id)
            .order_by(DistributionShare.member_id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_unapproved(self, distribution_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(DistributionShare)
            .where(
                DistributionShare.distribution_id == distribution_id,
                DistributionShare.approved_at.is_(None),
            )
        )
        return int(result.scalar_one())


class ReviewRepository:
    """Data access for reviews (one per request)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def try_create(self, review: Review) -> bool:
        """Insert a review; False if the request already has one."""
        try:
            async with self._session.begin_nested():
                self._session.add(review)
        except IntegrityError:
            return False
        return True

    async def get_by_request(self, request_id: uuid.UUID) -> Review | None:
        result = await self._session.execute(
            select(Review).where(Review.request_id == request_id)
        )
        return result.scalar_one_or_none()


class FirmRepository:
    """Read access to firms and their member roster."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, firm_id: str) -> Firm | None:
        result = await self._session.execute(select(Firm).where(Firm.id == firm_id))
        return result.scalar_one_or_none()

    async def get_active_members(self, firm_id: str) -> list[FirmMember]:
        result = await self._session.execute(
            select(FirmMember)
            .where(FirmMember.firm_id == firm_id, FirmMember.is_active.is_(True))
            .order_by(FirmMember.member_id.asc())
        )
        return list(result.scalars().all())

    async def get_member(self, firm_id: str, member_id: str) -> FirmMember | None:
        result = await self._session.execute(
            select(FirmMember).where(
                FirmMember.firm_id == firm_id, FirmMember.member_id == member_id
            )
        )
        return result.scalar_one_or_none()


class LedgerRepository:
    """Data access for provider and member credits."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def credit(
        self,
        payment_id: uuid.UUID,
        beneficiary_id: str,
        entry_type: LedgerEntryType,
        amount: Decimal,
        reference: str,
    ) -> bool:
        """Append a credit. False if ``reference`` was already credited."""
        entry = LedgerEntry(
            payment_id=payment_id,
            beneficiary_id=beneficiary_id,
            entry_type=entry_type.value,
            amount=amount,
            reference=reference,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(entry)
        except IntegrityError:
            return False
        return True

    async def get_by_payment(self, payment_id: uuid.UUID) -> list[LedgerEntry]:
        result = await self._session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.payment_id == payment_id)
            .order_by(LedgerEntry.created_at.asc())
        )
        return list(result.scalars().all())


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        event_type: EventType,
        old_status: str | None,
        new_status: str | None,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> AuditEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AuditEvent(
            entity_type=entity_type,
            entity_id=str(entity_id),
            event_type=event_type.value,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_entity(self, entity_type: str, entity_id: uuid.UUID) -> list[AuditEvent]:
        """Fetch all events for an entity in chronological order."""
        result = await self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == str(entity_id))
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_for_request(
        self, request_id: uuid.UUID, payment_ids: list[uuid.UUID]
    ) -> list[AuditEvent]:
        """Audit trail of a request and its payments, chronological."""
        entity_ids = [str(request_id), *(str(pid) for pid in payment_ids)]
        result = await self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_id.in_(entity_ids))
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())
