"""Escrow Ledger - payment sub-state machine and fund movements.

Payment lifecycle:

    PENDING -> PROCESSING -> ESCROW_HELD -> RELEASED -> DISTRIBUTED (firm)
       |           |              |
       +-> FAILED  +-> FAILED     +-> REFUND_PENDING -> REFUNDED

Rules enforced here:
    - One active payment per request: the insert races on a partial unique
      index, never on a pre-check.
    - Gateway calls never run inside a transaction. ``create_order`` commits
      the PENDING row together with a short order-claim lease first, talks to
      the gateway, then stores the order reference with a guarded update.
      A retry after a timeout reclaims the lease on the same row and reuses
      its idempotency key, so the gateway never sees two orders.
    - Every ledger transition is a ``guarded_update`` whose WHERE clause is
      the state machine's list of legal source states.
    - Credits (provider payout, member shares) are ledger entries with a
      unique reference and are applied at most once.
    - A dispute hold takes the payment off the release schedule; an
      administrator settles it with ``resolve_dispute`` (release or refund).
"""

from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import or_

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.clock import utcnow
from marketplace_escrow.domain.enums import (
    DisputeOutcome,
    EventType,
    LedgerEntryType,
    PaymentStatus,
    ProviderType,
    ReleaseTrigger,
    RequestStatus,
)
from marketplace_escrow.domain.events import DomainEvent
from marketplace_escrow.domain.exceptions import (
    DistributionExistsError,
    DistributionNotApprovedError,
    DistributionShareNotFoundError,
    DuplicatePaymentError,
    GatewayError,
    InvalidStateTransitionError,
    NotEligibleError,
    PaymentNotFoundError,
    RequestNotFoundError,
    SignatureInvalidError,
    ValidationError,
)
from marketplace_escrow.domain.fees import quantize, split_amount
from marketplace_escrow.domain.identity import SYSTEM_ACTOR
from marketplace_escrow.domain.state_machine import PaymentStateMachine, source_states
from marketplace_escrow.infrastructure.database.exclusive import guarded_update, refetch
from marketplace_escrow.infrastructure.database.orm_models import (
    DistributionShare,
    Payment,
    PaymentDistribution,
)
from marketplace_escrow.infrastructure.database.repositories import (
    DistributionRepository,
    EventRepository,
    LedgerRepository,
    PaymentRepository,
    RequestRepository,
)
from marketplace_escrow.infrastructure.notifications import record_event
from marketplace_escrow.logging_config import get_logger, get_security_logger
from marketplace_escrow.services.assignment_service import AssignmentResolver

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.clock import Clock
    from marketplace_escrow.domain.gateway_protocol import PaymentGateway
    from marketplace_escrow.domain.identity import Actor
    from marketplace_escrow.infrastructure.database.orm_models import (
        LedgerEntry,
        ServiceRequest,
    )

logger = get_logger(__name__)
security_logger = get_security_logger()

ENTITY = "payment"

_PAYABLE_REQUEST_STATUSES = frozenset(
    {RequestStatus.ACCEPTED.value, RequestStatus.IN_PROGRESS.value, RequestStatus.COMPLETED.value}
)
_RELEASED_STATUSES = frozenset({PaymentStatus.RELEASED.value, PaymentStatus.DISTRIBUTED.value})
_CAPTURED_STATUSES = frozenset(
    {PaymentStatus.ESCROW_HELD.value, PaymentStatus.REFUND_PENDING.value}
)


class ReleaseOutcome(enum.StrEnum):
    """Result of a release attempt. Only RELEASED means this caller moved money."""

    RELEASED = "RELEASED"
    ALREADY_RELEASED = "ALREADY_RELEASED"
    NOT_DUE = "NOT_DUE"
    NOT_HELD = "NOT_HELD"


@dataclass(frozen=True)
class WebhookResult:
    status: str
    event: str | None = None
    payment_id: uuid.UUID | None = None


class EscrowLedger:
    """Owns Payment rows and every movement of escrowed money."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._clock = clock
        self._request_repo = RequestRepository(session)
        self._payment_repo = PaymentRepository(session)
        self._distribution_repo = DistributionRepository(session)
        self._ledger_repo = LedgerRepository(session)
        self._event_repo = EventRepository(session)
        self._resolver = AssignmentResolver(session, self._settings)

    # ------------------------------------------------------------------
    # Order creation
    # ------------------------------------------------------------------

    async def create_order(self, request_id: uuid.UUID, amount: Decimal) -> Payment:
        """Create the request's payment and its gateway order.

        Raises:
            DuplicatePaymentError: The request already has an active payment
                (or another caller is creating its order right now).
            GatewayTimeoutError / GatewayError: The gateway call failed. The
                PENDING payment stays in place; calling again is safe.
        """
        amount = quantize(Decimal(amount))
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", details={"amount": str(amount)})

        request = await self._request_repo.lock(request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        if request.status not in _PAYABLE_REQUEST_STATUSES:
            raise InvalidStateTransitionError(request.status, "create_order", str(request_id))
        if request.provider_id is None:
            raise ValidationError(
                "Request has no bound provider", details={"request_id": str(request_id)}
            )

        existing = await self._payment_repo.get_active_for_request(request_id)
        if existing is not None:
            payment = await self._reclaim_order(existing, amount)
        else:
            payment = self._new_payment(request, amount)
            if not await self._payment_repo.try_create(payment):
                winner = await self._payment_repo.get_active_for_request(request_id)
                raise self._duplicate(request_id, winner)
            logger.info(
                "escrow.payment_created",
                payment_id=str(payment.id),
                request_id=str(request_id),
                amount=str(amount),
            )

        # The row and the lease must be durable before the network call.
        await self._session.commit()

        try:
            order = await self._gateway.create_order(
                payment.idempotency_key, payment.amount, payment.currency
            )
        except GatewayError as exc:
            await guarded_update(
                self._session,
                Payment,
                payment.id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.gateway_order_ref.is_(None),
                order_claimed_until=None,
            )
            await self._session.commit()
            exc.payment_id = str(payment.id)
            exc.details["payment_id"] = str(payment.id)
            logger.warning(
                "escrow.order_failed",
                payment_id=str(payment.id),
                code=exc.code,
                error=exc.message,
            )
            raise

        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status == PaymentStatus.PENDING.value,
            or_(
                Payment.gateway_order_ref.is_(None),
                Payment.gateway_order_ref == order.order_ref,
            ),
            gateway_order_ref=order.order_ref,
            order_claimed_until=None,
        )
        payment = await self._refetch_or_raise(payment.id)
        if not won:
            raise InvalidStateTransitionError(payment.status, "order_created", str(payment.id))

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=payment.id,
            event_type=EventType.PAYMENT_ORDER_CREATED,
            old_status=PaymentStatus.PENDING.value,
            new_status=PaymentStatus.PENDING.value,
            actor=request.client_id,
            metadata={"order_ref": order.order_ref, "amount_minor": order.amount_minor},
        )
        self._emit(EventType.PAYMENT_ORDER_CREATED, payment)

        logger.info(
            "escrow.order_created",
            payment_id=str(payment.id),
            order_ref=order.order_ref,
        )
        return payment

    def _new_payment(self, request: ServiceRequest, amount: Decimal) -> Payment:
        fee_percent = (
            self._settings.platform_fee_firm_percent
            if request.provider_type == ProviderType.FIRM.value
            else self._settings.platform_fee_individual_percent
        )
        split = split_amount(amount, fee_percent)
        payment_id = uuid.uuid4()
        now = self._clock()
        return Payment(
            id=payment_id,
            request_id=request.id,
            amount=split.amount,
            currency=self._settings.gateway_currency,
            platform_fee_percent=fee_percent,
            platform_fee=split.platform_fee,
            provider_amount=split.provider_amount,
            status=PaymentStatus.PENDING.value,
            idempotency_key=f"rcpt_{payment_id.hex}",
            order_claimed_until=now + timedelta(seconds=self._settings.order_claim_seconds),
            created_at=now,
        )

    async def _reclaim_order(self, existing: Payment, amount: Decimal) -> Payment:
        """Take over a PENDING payment whose order was never stored."""
        if existing.status != PaymentStatus.PENDING.value or existing.gateway_order_ref:
            raise self._duplicate(existing.request_id, existing)
        if existing.amount != amount:
            raise ValidationError(
                "A pending order for a different amount exists for this request",
                details={"payment_id": str(existing.id), "amount": str(existing.amount)},
            )
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            existing.id,
            Payment.status == PaymentStatus.PENDING.value,
            Payment.gateway_order_ref.is_(None),
            or_(Payment.order_claimed_until.is_(None), Payment.order_claimed_until <= now),
            order_claimed_until=now + timedelta(seconds=self._settings.order_claim_seconds),
        )
        payment = await self._refetch_or_raise(existing.id)
        if not won:
            raise self._duplicate(payment.request_id, payment)
        logger.info("escrow.order_retry", payment_id=str(payment.id))
        return payment

    @staticmethod
    def _duplicate(request_id: uuid.UUID, payment: Payment | None) -> DuplicatePaymentError:
        return DuplicatePaymentError(
            str(request_id),
            str(payment.id) if payment else None,
            gateway_order_ref=payment.gateway_order_ref if payment else None,
            status=payment.status if payment else None,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_payment(
        self, payment_id: uuid.UUID, gateway_payment_ref: str, signature: str
    ) -> Payment:
        """Check the checkout signature and move the funds into escrow.

        Raises:
            SignatureInvalidError: Signature mismatch. Audited and committed
                before raising; never retried.
        """
        payment = await self._get_payment_or_raise(payment_id)
        if payment.gateway_order_ref is None:
            raise ValidationError(
                "Payment has no gateway order yet", details={"payment_id": str(payment_id)}
            )

        if not self._gateway.verify_signature(
            payment.gateway_order_ref, gateway_payment_ref, signature
        ):
            await self._reject_signature(payment, gateway_payment_ref)

        if (
            payment.status == PaymentStatus.ESCROW_HELD.value
            and payment.gateway_payment_ref == gateway_payment_ref
        ):
            logger.info("escrow.verify_noop", payment_id=str(payment_id))
            return payment

        held = await self._hold(payment, gateway_payment_ref, actor="GATEWAY_CHECKOUT")
        if held is None:
            current = await self._refetch_or_raise(payment_id)
            if (
                current.status in _CAPTURED_STATUSES
                and current.gateway_payment_ref == gateway_payment_ref
            ):
                return current
            raise InvalidStateTransitionError(
                current.status, PaymentStatus.ESCROW_HELD.value, str(payment_id)
            )
        return held

    async def _reject_signature(self, payment: Payment, gateway_payment_ref: str) -> None:
        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=payment.id,
            event_type=EventType.SIGNATURE_REJECTED,
            old_status=payment.status,
            new_status=payment.status,
            actor="GATEWAY_CHECKOUT",
            metadata={
                "order_ref": payment.gateway_order_ref,
                "payment_ref": gateway_payment_ref,
            },
        )
        await self._session.commit()
        security_logger.warning(
            "security.signature_invalid",
            payment_id=str(payment.id),
            order_ref=payment.gateway_order_ref,
            payment_ref=gateway_payment_ref,
        )
        raise SignatureInvalidError(str(payment.id))

    async def _hold(self, payment: Payment, gateway_payment_ref: str, actor: str) -> Payment | None:
        """{PENDING, PROCESSING} -> ESCROW_HELD. None if another caller moved it first.

        Money captured for a request cancelled in the meantime is parked in
        REFUND_PENDING instead, with the gateway reference the refund needs.
        """
        request = await self._get_request_or_raise(payment.request_id)
        if request.status == RequestStatus.CANCELLED.value:
            return await self._hold_for_refund(payment, gateway_payment_ref, actor)

        old_status = payment.status
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status.in_(source_states(PaymentStateMachine, "escrow_confirmed")),
            status=PaymentStatus.ESCROW_HELD.value,
            gateway_payment_ref=gateway_payment_ref,
            gateway_signature_verified=True,
            escrow_held_at=now,
            auto_release_at=now + timedelta(days=self._settings.escrow_hold_days),
            updated_at=now,
        )
        if not won:
            return None
        held = await self._refetch_or_raise(payment.id)

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=held.id,
            event_type=EventType.PAYMENT_ESCROWED,
            old_status=old_status,
            new_status=PaymentStatus.ESCROW_HELD.value,
            actor=actor,
            metadata={
                "payment_ref": gateway_payment_ref,
                "auto_release_at": held.auto_release_at.isoformat(),
            },
        )
        self._emit(EventType.PAYMENT_ESCROWED, held)

        logger.info(
            "escrow.held",
            payment_id=str(held.id),
            auto_release_at=held.auto_release_at.isoformat(),
        )
        return held

    async def _hold_for_refund(
        self, payment: Payment, gateway_payment_ref: str, actor: str
    ) -> Payment | None:
        old_status = payment.status
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            or_(
                Payment.status.in_(source_states(PaymentStateMachine, "escrow_confirmed")),
                (Payment.status == PaymentStatus.REFUND_PENDING.value)
                & Payment.gateway_payment_ref.is_(None),
            ),
            status=PaymentStatus.REFUND_PENDING.value,
            gateway_payment_ref=gateway_payment_ref,
            gateway_signature_verified=True,
            refund_requested_at=payment.refund_requested_at or now,
            auto_release_at=None,
            order_claimed_until=None,
            updated_at=now,
        )
        if not won:
            return None
        current = await self._refetch_or_raise(payment.id)

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.PAYMENT_REFUND_PENDING,
            old_status=old_status,
            new_status=PaymentStatus.REFUND_PENDING.value,
            actor=actor,
            metadata={"payment_ref": gateway_payment_ref, "reason": "request_cancelled"},
        )
        self._emit(EventType.PAYMENT_REFUND_PENDING, current)
        logger.warning(
            "escrow.captured_after_cancel",
            payment_id=str(current.id),
            request_id=str(current.request_id),
        )
        return current

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_on_review(self, request_id: uuid.UUID) -> ReleaseOutcome | None:
        """Release the request's held payment because the client reviewed it.

        Returns None when the request has no payment in or past escrow.
        """
        payment = await self._payment_repo.get_active_for_request(request_id)
        if payment is None:
            logger.info("escrow.release_skipped", request_id=str(request_id), reason="no_payment")
            return None
        if payment.status in _RELEASED_STATUSES:
            return ReleaseOutcome.ALREADY_RELEASED
        if payment.status != PaymentStatus.ESCROW_HELD.value:
            logger.info(
                "escrow.release_skipped",
                request_id=str(request_id),
                payment_id=str(payment.id),
                status=payment.status,
            )
            return ReleaseOutcome.NOT_HELD
        return await self._release(payment, ReleaseTrigger.REVIEW)

    async def release_on_schedule(self, payment_id: uuid.UUID) -> ReleaseOutcome:
        """Release a held payment whose hold period has elapsed. Idempotent."""
        payment = await self._get_payment_or_raise(payment_id)
        return await self._release(
            payment,
            ReleaseTrigger.SCHEDULE,
            Payment.auto_release_at.is_not(None),
            Payment.auto_release_at <= self._clock(),
        )

    async def _release(
        self,
        payment: Payment,
        trigger: ReleaseTrigger,
        *conditions,  # noqa: ANN002
        actor: str = SYSTEM_ACTOR.actor_id,
    ) -> ReleaseOutcome:
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status.in_(source_states(PaymentStateMachine, "escrow_released")),
            *conditions,
            status=PaymentStatus.RELEASED.value,
            released_at=now,
            release_trigger=trigger.value,
            updated_at=now,
        )
        current = await self._refetch_or_raise(payment.id)
        if not won:
            if current.status in _RELEASED_STATUSES:
                logger.info(
                    "escrow.release_noop", payment_id=str(payment.id), trigger=trigger.value
                )
                return ReleaseOutcome.ALREADY_RELEASED
            if current.status == PaymentStatus.ESCROW_HELD.value:
                return ReleaseOutcome.NOT_DUE
            return ReleaseOutcome.NOT_HELD

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.PAYMENT_RELEASED,
            old_status=PaymentStatus.ESCROW_HELD.value,
            new_status=PaymentStatus.RELEASED.value,
            actor=actor,
            metadata={"trigger": trigger.value},
        )
        self._emit(EventType.PAYMENT_RELEASED, current, trigger=trigger.value)
        logger.info("escrow.released", payment_id=str(current.id), trigger=trigger.value)

        request = await self._get_request_or_raise(current.request_id)
        if request.provider_type == ProviderType.FIRM.value:
            await self._distribute_if_ready(current)
        else:
            credited = await self._ledger_repo.credit(
                payment_id=current.id,
                beneficiary_id=request.provider_id,
                entry_type=LedgerEntryType.PROVIDER_PAYOUT,
                amount=current.provider_amount,
                reference=f"release:{current.id}",
            )
            if not credited:
                logger.error("escrow.double_credit_blocked", payment_id=str(current.id))
        return ReleaseOutcome.RELEASED

    async def _distribute_if_ready(self, payment: Payment) -> None:
        if payment.distribution_id is not None:
            distribution = await self._distribution_repo.get_by_id(payment.distribution_id)
            if distribution is not None and distribution.is_approved:
                await self.distribute(payment.id)
                return
        logger.warning(
            "escrow.distribution_pending",
            payment_id=str(payment.id),
            distribution_id=str(payment.distribution_id) if payment.distribution_id else None,
        )

    # ------------------------------------------------------------------
    # Firm distribution
    # ------------------------------------------------------------------

    async def create_distribution(
        self,
        payment_id: uuid.UUID,
        shares: list[tuple[str, float]] | None = None,
    ) -> PaymentDistribution:
        """Attach the member split to a firm payment. Once per payment.

        ``shares`` are (member_id, percentage) pairs; omitted, the firm's
        default template is used.
        """
        payment = await self._get_payment_or_raise(payment_id)
        request = await self._get_request_or_raise(payment.request_id)
        if request.provider_type != ProviderType.FIRM.value:
            raise ValidationError(
                "Only firm payments are distributed", details={"payment_id": str(payment_id)}
            )
        if payment.status not in (PaymentStatus.ESCROW_HELD.value, PaymentStatus.RELEASED.value):
            raise InvalidStateTransitionError(payment.status, "create_distribution", str(payment_id))
        if payment.distribution_id is not None:
            raise DistributionExistsError(str(payment_id), str(payment.distribution_id))

        allocations = await self._resolver.build_distribution(
            request.firm_id, payment.provider_amount, shares
        )
        distribution = PaymentDistribution(
            id=uuid.uuid4(),
            firm_id=request.firm_id,
            request_id=request.id,
            total_amount=payment.amount,
            distributable_amount=payment.provider_amount,
            created_at=self._clock(),
        )
        share_rows = [
            DistributionShare(member_id=a.member_id, percentage=a.percentage, amount=a.amount)
            for a in allocations
        ]
        distribution = await self._distribution_repo.create(distribution, share_rows)

        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.distribution_id.is_(None),
            distribution_id=distribution.id,
        )
        if not won:
            current = await self._refetch_or_raise(payment.id)
            raise DistributionExistsError(
                str(payment_id),
                str(current.distribution_id) if current.distribution_id else None,
            )

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=payment.id,
            event_type=EventType.DISTRIBUTION_CREATED,
            old_status=payment.status,
            new_status=payment.status,
            actor=request.firm_id,
            metadata={
                "distribution_id": str(distribution.id),
                "shares": [
                    {"member_id": a.member_id, "percentage": a.percentage, "amount": str(a.amount)}
                    for a in allocations
                ],
            },
        )
        logger.info(
            "escrow.distribution_created",
            payment_id=str(payment_id),
            distribution_id=str(distribution.id),
        )
        return await self._distribution_repo.get_by_id(distribution.id)

    async def approve_share(self, share_id: uuid.UUID, member_id: str) -> DistributionShare:
        """A member approves their share; the last approval finalises the split."""
        share = await self._distribution_repo.get_share(share_id)
        if share is None:
            raise DistributionShareNotFoundError(str(share_id))
        if share.member_id != member_id:
            raise NotEligibleError(
                "Only the share's member can approve it",
                details={"share_id": str(share_id), "member_id": member_id},
            )

        distribution = await self._distribution_repo.lock(share.distribution_id)
        if distribution.is_approved:
            return share

        now = self._clock()
        await guarded_update(
            self._session,
            DistributionShare,
            share.id,
            DistributionShare.approved_at.is_(None),
            approved_at=now,
        )
        share = await self._distribution_repo.get_share(share_id)

        if await self._distribution_repo.count_unapproved(distribution.id) == 0:
            finalised = await guarded_update(
                self._session,
                PaymentDistribution,
                distribution.id,
                PaymentDistribution.is_approved.is_(False),
                is_approved=True,
                approved_at=now,
            )
            if finalised:
                await self._on_distribution_approved(distribution.id)
        return share

    async def _on_distribution_approved(self, distribution_id: uuid.UUID) -> None:
        payment = await self._payment_repo.get_by_distribution(distribution_id)
        if payment is None:
            return
        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=payment.id,
            event_type=EventType.DISTRIBUTION_APPROVED,
            old_status=payment.status,
            new_status=payment.status,
            actor=SYSTEM_ACTOR.actor_id,
            metadata={"distribution_id": str(distribution_id)},
        )
        logger.info(
            "escrow.distribution_approved",
            payment_id=str(payment.id),
            distribution_id=str(distribution_id),
        )
        if payment.status == PaymentStatus.RELEASED.value:
            await self.distribute(payment.id)

    async def distribute(self, payment_id: uuid.UUID) -> Payment:
        """Credit every share of the approved distribution exactly once.

        Raises:
            DistributionNotApprovedError: No distribution, or not yet approved.
        """
        payment = await self._get_payment_or_raise(payment_id)
        if payment.status == PaymentStatus.DISTRIBUTED.value:
            return payment
        if payment.status != PaymentStatus.RELEASED.value:
            raise InvalidStateTransitionError(
                payment.status, PaymentStatus.DISTRIBUTED.value, str(payment_id)
            )
        distribution = (
            await self._distribution_repo.get_by_id(payment.distribution_id)
            if payment.distribution_id
            else None
        )
        if distribution is None or not distribution.is_approved:
            raise DistributionNotApprovedError(
                str(payment_id), str(payment.distribution_id) if payment.distribution_id else None
            )

        now = self._clock()
        credited = 0
        for share in await self._distribution_repo.get_shares(distribution.id):
            claimed = await guarded_update(
                self._session,
                DistributionShare,
                share.id,
                DistributionShare.credited_at.is_(None),
                credited_at=now,
            )
            if not claimed:
                continue
            await self._ledger_repo.credit(
                payment_id=payment.id,
                beneficiary_id=share.member_id,
                entry_type=LedgerEntryType.DISTRIBUTION_SHARE,
                amount=share.amount,
                reference=f"share:{share.id}",
            )
            credited += 1

        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status.in_(source_states(PaymentStateMachine, "shares_distributed")),
            status=PaymentStatus.DISTRIBUTED.value,
            distributed_at=now,
            updated_at=now,
        )
        await guarded_update(
            self._session,
            PaymentDistribution,
            distribution.id,
            PaymentDistribution.is_distributed.is_(False),
            is_distributed=True,
            distributed_at=now,
        )
        current = await self._refetch_or_raise(payment.id)
        if not won:
            return current

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.DISTRIBUTION_APPLIED,
            old_status=PaymentStatus.RELEASED.value,
            new_status=PaymentStatus.DISTRIBUTED.value,
            actor=SYSTEM_ACTOR.actor_id,
            metadata={"distribution_id": str(distribution.id), "shares_credited": credited},
        )
        self._emit(EventType.DISTRIBUTION_APPLIED, current, distribution_id=str(distribution.id))
        logger.info(
            "escrow.distributed",
            payment_id=str(current.id),
            distribution_id=str(distribution.id),
            shares_credited=credited,
        )
        return current

    # ------------------------------------------------------------------
    # Gateway webhook
    # ------------------------------------------------------------------

    async def handle_webhook(self, body: bytes, signature: str) -> WebhookResult:
        """Apply a signed gateway webhook.

        Handles payment.authorized, payment.captured, payment.failed and
        refund.processed. Duplicate deliveries are acknowledged without
        effect.
        """
        if not self._gateway.verify_webhook(body, signature):
            security_logger.warning("security.webhook_signature_invalid", size=len(body))
            raise SignatureInvalidError("webhook")

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc

        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event = payload.get("event")
        entities = payload.get("payload")
        payment_entity = _webhook_entity(entities, "payment")
        refund_entity = _webhook_entity(entities, "refund")

        order_ref = payment_entity.get("order_id")
        if not isinstance(order_ref, str) or not order_ref:
            return WebhookResult(status="ignored", event=event)
        payment = await self._payment_repo.get_by_order_ref(order_ref)
        if payment is None:
            logger.info("escrow.webhook_unknown_order", order_ref=order_ref, webhook_event=event)
            return WebhookResult(status="ignored", event=event)

        payment_ref = payment_entity.get("id")
        applied = False
        if event == "payment.authorized":
            applied = await self._authorize(payment, payment_ref)
        elif event == "payment.captured":
            applied = await self._hold(payment, payment_ref, actor="GATEWAY_WEBHOOK") is not None
        elif event == "payment.failed":
            applied = await self._fail(payment, payment_entity.get("error_description"))
        elif event == "refund.processed":
            applied = await self._complete_refund(
                payment, refund_entity.get("id"), SYSTEM_ACTOR.actor_id
            )
        else:
            return WebhookResult(status="ignored", event=event, payment_id=payment.id)

        logger.info(
            "escrow.webhook",
            webhook_event=event,
            payment_id=str(payment.id),
            applied=applied,
        )
        return WebhookResult(
            status="applied" if applied else "duplicate", event=event, payment_id=payment.id
        )

    async def _authorize(self, payment: Payment, payment_ref: str | None) -> bool:
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status.in_(source_states(PaymentStateMachine, "payment_authorized")),
            status=PaymentStatus.PROCESSING.value,
            gateway_payment_ref=payment_ref,
            updated_at=now,
        )
        if won:
            await self._event_repo.record(
                entity_type=ENTITY,
                entity_id=payment.id,
                event_type=EventType.PAYMENT_AUTHORIZED,
                old_status=PaymentStatus.PENDING.value,
                new_status=PaymentStatus.PROCESSING.value,
                actor="GATEWAY_WEBHOOK",
                metadata={"payment_ref": payment_ref},
            )
        return won

    async def _fail(self, payment: Payment, reason: str | None) -> bool:
        old_status = payment.status
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status.in_(source_states(PaymentStateMachine, "payment_failed")),
            status=PaymentStatus.FAILED.value,
            failed_at=now,
            failure_reason=reason,
            order_claimed_until=None,
            updated_at=now,
        )
        if won:
            await self._event_repo.record(
                entity_type=ENTITY,
                entity_id=payment.id,
                event_type=EventType.PAYMENT_FAILED,
                old_status=old_status,
                new_status=PaymentStatus.FAILED.value,
                actor="GATEWAY_WEBHOOK",
                metadata={"reason": reason},
            )
            logger.warning("escrow.payment_failed", payment_id=str(payment.id), reason=reason)
        return won

    # ------------------------------------------------------------------
    # Disputes and refunds (administrative)
    # ------------------------------------------------------------------

    async def hold_for_dispute(
        self, payment_id: uuid.UUID, actor: Actor, reason: str | None = None
    ) -> Payment:
        """Stop the scheduled release of a held payment."""
        payment = await self._get_payment_or_raise(payment_id)
        if payment.status != PaymentStatus.ESCROW_HELD.value:
            raise InvalidStateTransitionError(payment.status, "dispute_hold", str(payment_id))

        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status == PaymentStatus.ESCROW_HELD.value,
            Payment.auto_release_at.is_not(None),
            auto_release_at=None,
            updated_at=self._clock(),
        )
        current = await self._refetch_or_raise(payment.id)
        if not won:
            if current.status == PaymentStatus.ESCROW_HELD.value:
                return current
            raise InvalidStateTransitionError(current.status, "dispute_hold", str(payment_id))

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.PAYMENT_DISPUTE_HOLD,
            old_status=current.status,
            new_status=current.status,
            actor=actor.actor_id,
            metadata={"reason": reason},
        )
        logger.warning("escrow.dispute_hold", payment_id=str(payment_id), by=actor.actor_id)
        return current

    async def resolve_dispute(
        self,
        payment_id: uuid.UUID,
        actor: Actor,
        outcome: DisputeOutcome,
        note: str | None = None,
    ) -> Payment:
        """Settle a payment held for a dispute.

        RELEASE pays the provider now. REFUND moves the payment to
        REFUND_PENDING; ``execute_refund`` then returns the money. Repeating
        a resolution that already took effect is a no-op.

        Raises:
            InvalidStateTransitionError: The payment is not on a dispute hold,
                or was already settled the other way.
        """
        payment = await self._get_payment_or_raise(payment_id)
        settled = (
            _RELEASED_STATUSES
            if outcome == DisputeOutcome.RELEASE
            else {PaymentStatus.REFUND_PENDING.value, PaymentStatus.REFUNDED.value}
        )
        if payment.status in settled:
            return payment
        if payment.status != PaymentStatus.ESCROW_HELD.value or payment.auto_release_at is not None:
            raise InvalidStateTransitionError(payment.status, "resolve_dispute", str(payment_id))

        if outcome == DisputeOutcome.RELEASE:
            result = await self._release(
                payment,
                ReleaseTrigger.DISPUTE,
                Payment.auto_release_at.is_(None),
                actor=actor.actor_id,
            )
            won = result == ReleaseOutcome.RELEASED
        else:
            won = await self._refund_disputed(payment, actor)

        current = await self._refetch_or_raise(payment.id)
        if not won:
            if current.status in settled:
                return current
            raise InvalidStateTransitionError(current.status, "resolve_dispute", str(payment_id))

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.PAYMENT_DISPUTE_RESOLVED,
            old_status=PaymentStatus.ESCROW_HELD.value,
            new_status=current.status,
            actor=actor.actor_id,
            metadata={"outcome": outcome.value, "note": note},
        )
        self._emit(EventType.PAYMENT_DISPUTE_RESOLVED, current, outcome=outcome.value)
        logger.warning(
            "escrow.dispute_resolved",
            payment_id=str(payment_id),
            outcome=outcome.value,
            by=actor.actor_id,
        )
        return current

    async def _refund_disputed(self, payment: Payment, actor: Actor) -> bool:
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status == PaymentStatus.ESCROW_HELD.value,
            Payment.auto_release_at.is_(None),
            status=PaymentStatus.REFUND_PENDING.value,
            refund_requested_at=now,
            updated_at=now,
        )
        if won:
            await self._event_repo.record(
                entity_type=ENTITY,
                entity_id=payment.id,
                event_type=EventType.PAYMENT_REFUND_PENDING,
                old_status=PaymentStatus.ESCROW_HELD.value,
                new_status=PaymentStatus.REFUND_PENDING.value,
                actor=actor.actor_id,
                metadata={"reason": "dispute"},
            )
        return won

    async def execute_refund(self, payment_id: uuid.UUID, actor: Actor) -> Payment:
        """Refund a REFUND_PENDING payment through the gateway."""
        payment = await self._get_payment_or_raise(payment_id)
        if payment.status == PaymentStatus.REFUNDED.value:
            return payment
        if payment.status != PaymentStatus.REFUND_PENDING.value:
            raise InvalidStateTransitionError(
                payment.status, PaymentStatus.REFUNDED.value, str(payment_id)
            )

        refund_ref = None
        if payment.gateway_payment_ref:
            # Nothing written yet; end the read transaction before the network call.
            await self._session.commit()
            refund = await self._gateway.refund(
                payment.gateway_payment_ref, payment.amount, f"refund_{payment.id.hex}"
            )
            refund_ref = refund.refund_ref

        await self._complete_refund(payment, refund_ref, actor.actor_id)
        return await self._refetch_or_raise(payment.id)

    async def _complete_refund(self, payment: Payment, refund_ref: str | None, actor: str) -> bool:
        now = self._clock()
        won = await guarded_update(
            self._session,
            Payment,
            payment.id,
            Payment.status.in_(source_states(PaymentStateMachine, "refund_completed")),
            status=PaymentStatus.REFUNDED.value,
            refunded_at=now,
            gateway_refund_ref=refund_ref,
            updated_at=now,
        )
        if not won:
            current = await self._refetch_or_raise(payment.id)
            if current.status == PaymentStatus.REFUNDED.value:
                return False
            raise InvalidStateTransitionError(
                current.status, PaymentStatus.REFUNDED.value, str(payment.id)
            )

        current = await self._refetch_or_raise(payment.id)
        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.PAYMENT_REFUNDED,
            old_status=PaymentStatus.REFUND_PENDING.value,
            new_status=PaymentStatus.REFUNDED.value,
            actor=actor,
            metadata={"refund_ref": refund_ref},
        )
        self._emit(EventType.PAYMENT_REFUNDED, current, refund_ref=refund_ref)
        logger.info("escrow.refunded", payment_id=str(current.id), refund_ref=refund_ref)
        return True

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: uuid.UUID) -> Payment:
        return await self._get_payment_or_raise(payment_id)

    async def get_ledger_entries(self, payment_id: uuid.UUID) -> list[LedgerEntry]:
        await self._get_payment_or_raise(payment_id)
        return await self._ledger_repo.get_by_payment(payment_id)

    async def get_distribution(self, payment_id: uuid.UUID) -> PaymentDistribution | None:
        payment = await self._get_payment_or_raise(payment_id)
        if payment.distribution_id is None:
            return None
        return await self._distribution_repo.get_by_id(payment.distribution_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_request_or_raise(self, request_id: uuid.UUID) -> ServiceRequest:
        request = await self._request_repo.get_by_id(request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        return request

    async def _get_payment_or_raise(self, payment_id: uuid.UUID) -> Payment:
        payment = await self._payment_repo.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    async def _refetch_or_raise(self, payment_id: uuid.UUID) -> Payment:
        payment = await refetch(self._session, Payment, payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    def _emit(self, event_type: EventType, payment: Payment, **extra) -> None:  # noqa: ANN003
        record_event(
            self._session,
            DomainEvent(
                event_type=event_type,
                aggregate_id=str(payment.id),
                payload={
                    "request_id": str(payment.request_id),
                    "status": payment.status,
                    "amount": str(payment.amount),
                    "provider_amount": str(payment.provider_amount),
                    **extra,
                },
                occurred_at=self._clock(),
            ),
        )


def _webhook_entity(entities: object, name: str) -> dict:
    """``payload.<name>.entity`` of a webhook body; empty when absent or malformed."""
    if not isinstance(entities, dict):
        return {}
    wrapper = entities.get(name)
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else {}
