"""Request Lifecycle Manager - core business logic for service requests.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Exclusive conditional updates (race guard)
    - Repositories (data access)
    - Event log (audit trail) and post-commit domain events

Every transition first asks the state machine whether it is legal from the
status we read, then applies it with ``guarded_update`` whose WHERE clause
repeats the expected prior state. A caller that loses the race re-reads the
row and gets a specific answer (``AlreadyAcceptedError``) rather than a
generic failure.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import or_

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.clock import utcnow
from marketplace_escrow.domain.enums import (
    ActorRole,
    AssignmentMethod,
    AssignmentPreference,
    EventType,
    PaymentStatus,
    ProviderType,
    RequestStatus,
)
from marketplace_escrow.domain.events import DomainEvent
from marketplace_escrow.domain.exceptions import (
    AlreadyAcceptedError,
    InvalidStateTransitionError,
    NotEligibleError,
    RequestLimitExceededError,
    RequestNotFoundError,
    ValidationError,
)
from marketplace_escrow.domain.identity import SYSTEM_ACTOR, default_eligibility
from marketplace_escrow.domain.state_machine import (
    PaymentStateMachine,
    RequestStateMachine,
    source_states,
)
from marketplace_escrow.infrastructure.database.exclusive import guarded_update, refetch
from marketplace_escrow.infrastructure.database.orm_models import Payment, ServiceRequest
from marketplace_escrow.infrastructure.database.repositories import (
    EventRepository,
    FirmRepository,
    PaymentRepository,
    RequestRepository,
)
from marketplace_escrow.infrastructure.notifications import record_event
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.assignment_service import AssignmentResolver

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.clock import Clock
    from marketplace_escrow.domain.identity import Actor, EligibilityCheck, ProviderIdentity
    from marketplace_escrow.infrastructure.database.orm_models import AuditEvent

logger = get_logger(__name__)

ENTITY = "request"

# Statuses that mean "a provider already won the accept race".
_BOUND_STATUSES = frozenset(
    {RequestStatus.ACCEPTED.value, RequestStatus.IN_PROGRESS.value, RequestStatus.COMPLETED.value}
)


@dataclass(frozen=True)
class RequestSpec:
    """What the client asks for when creating a request."""

    provider_type: ProviderType
    provider_id: str | None = None
    firm_id: str | None = None
    assignment_preference: AssignmentPreference | None = None
    service_type: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class CancellationResult:
    request: ServiceRequest
    refund_pending_payment_id: uuid.UUID | None = None


class RequestLifecycleManager:
    """Manages the service request lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        eligibility: EligibilityCheck = default_eligibility,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._eligibility = eligibility
        self._settings = settings or get_settings()
        self._clock = clock
        self._request_repo = RequestRepository(session)
        self._payment_repo = PaymentRepository(session)
        self._firm_repo = FirmRepository(session)
        self._event_repo = EventRepository(session)
        self._resolver = AssignmentResolver(session, self._settings)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_request(self, client_id: str, spec: RequestSpec) -> ServiceRequest:
        """Create a new service request in PENDING state.

        Raises:
            RequestLimitExceededError: The client already holds the maximum
                number of PENDING requests.
            ValidationError / NotEligibleError / FirmNotFoundError: The firm
                binding is invalid.
        """
        await self._request_repo.lock_client(client_id)
        limit = self._settings.max_pending_requests
        pending = await self._request_repo.count_pending_for_client(client_id)
        if pending >= limit:
            logger.info("request.limit_exceeded", client_id=client_id, pending=pending)
            raise RequestLimitExceededError(client_id, current_count=pending, limit=limit)

        provider_id = spec.provider_id
        preference = None
        firm_id = None
        if spec.provider_type == ProviderType.FIRM:
            firm_id = spec.firm_id
            preference = spec.assignment_preference or AssignmentPreference.BEST_AVAILABLE
            await self._resolver.get_active_firm(firm_id)
            if not await self._firm_repo.get_active_members(firm_id):
                raise NotEligibleError("Firm has no active members", details={"firm_id": firm_id})
            if preference == AssignmentPreference.SPECIFIC_CA:
                if provider_id is None:
                    raise ValidationError(
                        "SPECIFIC_CA requests must name a firm member",
                        details={"firm_id": firm_id},
                    )
                await self._resolver.require_member(firm_id, provider_id, preference)
            else:
                provider_id = None
        elif spec.firm_id is not None or spec.assignment_preference is not None:
            raise ValidationError("firm_id and assignment_preference apply to FIRM requests only")

        request = ServiceRequest(
            client_id=client_id,
            provider_type=spec.provider_type.value,
            provider_id=provider_id,
            firm_id=firm_id,
            assignment_preference=preference.value if preference else None,
            service_type=spec.service_type,
            description=spec.description,
            status=RequestStatus.PENDING.value,
            created_at=self._clock(),
        )
        request = await self._request_repo.create(request)

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=request.id,
            event_type=EventType.REQUEST_CREATED,
            old_status=None,
            new_status=RequestStatus.PENDING.value,
            actor=client_id,
            metadata={"provider_type": request.provider_type, "firm_id": firm_id},
        )
        self._emit(EventType.REQUEST_CREATED, request)

        logger.info(
            "request.created",
            request_id=str(request.id),
            client_id=client_id,
            provider_type=request.provider_type,
        )
        return request

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def accept_request(
        self, request_id: uuid.UUID, identity: ProviderIdentity
    ) -> ServiceRequest:
        """Provider accepts a PENDING request. Exactly one concurrent caller wins.

        Raises:
            AlreadyAcceptedError: Another provider won the race.
            NotEligibleError: The eligibility capability or firm rules say no.
            InvalidStateTransitionError: The request was cancelled.
            RequestNotFoundError: No such request.
        """
        request = await self._get_request_or_raise(request_id)
        if request.status != RequestStatus.PENDING.value:
            self._raise_accept_loss(request)

        if not self._eligibility(identity, request):
            raise NotEligibleError(
                "Provider is not eligible to accept this request",
                details={"provider_id": identity.provider_id, "request_id": str(request_id)},
            )

        if request.provider_type == ProviderType.FIRM.value:
            await self._resolver.validate_acceptor(request, identity.provider_id)
        method = (
            AssignmentMethod.CLIENT_SPECIFIED
            if request.provider_id is not None
            else AssignmentMethod.PROVIDER_ACCEPTED
        )
        return await self._bind_provider(request, identity.provider_id, method, identity.provider_id)

    async def auto_assign(self, request_id: uuid.UUID) -> ServiceRequest:
        """Bind a firm request to its top-scoring member."""
        request = await self._get_request_or_raise(request_id)
        if request.provider_type != ProviderType.FIRM.value:
            raise ValidationError("Only firm requests can be auto-assigned")
        if request.assignment_preference == AssignmentPreference.SPECIFIC_CA.value:
            raise ValidationError("SPECIFIC_CA requests are bound to the requested member")
        if request.status != RequestStatus.PENDING.value:
            self._raise_accept_loss(request)

        member_id = await self._resolver.resolve_provider(request)
        return await self._bind_provider(
            request, member_id, AssignmentMethod.AUTO, SYSTEM_ACTOR.actor_id
        )

    async def _bind_provider(
        self,
        request: ServiceRequest,
        provider_id: str,
        method: AssignmentMethod,
        actor: str,
    ) -> ServiceRequest:
        self._fire_transition(request, "provider_accepts")
        now = self._clock()
        won = await guarded_update(
            self._session,
            ServiceRequest,
            request.id,
            ServiceRequest.status == RequestStatus.PENDING.value,
            or_(ServiceRequest.provider_id.is_(None), ServiceRequest.provider_id == provider_id),
            status=RequestStatus.ACCEPTED.value,
            provider_id=provider_id,
            assignment_method=method.value,
            accepted_at=now,
            updated_at=now,
        )
        current = await refetch(self._session, ServiceRequest, request.id)
        if not won:
            if current is None:
                raise RequestNotFoundError(str(request.id))
            self._raise_accept_loss(current)

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.REQUEST_ACCEPTED,
            old_status=RequestStatus.PENDING.value,
            new_status=RequestStatus.ACCEPTED.value,
            actor=actor,
            metadata={"provider_id": provider_id, "assignment_method": method.value},
        )
        self._emit(EventType.REQUEST_ACCEPTED, current)

        logger.info(
            "request.accepted",
            request_id=str(current.id),
            provider_id=provider_id,
            method=method.value,
        )
        return current

    # ------------------------------------------------------------------
    # Rejection
    # ------------------------------------------------------------------

    async def reject_request(
        self, request_id: uuid.UUID, identity: ProviderIdentity, reason: str | None = None
    ) -> ServiceRequest:
        """The targeted provider declines a PENDING request. Terminal."""
        request = await self._get_request_or_raise(request_id)
        self._fire_transition(request, "provider_rejects")
        if request.provider_id is None or request.provider_id != identity.provider_id:
            raise NotEligibleError(
                "Only the targeted provider can reject this request",
                details={"provider_id": identity.provider_id, "request_id": str(request_id)},
            )

        now = self._clock()
        won = await guarded_update(
            self._session,
            ServiceRequest,
            request.id,
            ServiceRequest.status == RequestStatus.PENDING.value,
            ServiceRequest.provider_id == identity.provider_id,
            status=RequestStatus.CANCELLED.value,
            cancelled_at=now,
            cancel_reason=reason,
            cancelled_by=identity.provider_id,
            updated_at=now,
        )
        current = await self._after_update(request.id, won, RequestStatus.CANCELLED)

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.REQUEST_REJECTED,
            old_status=RequestStatus.PENDING.value,
            new_status=RequestStatus.CANCELLED.value,
            actor=identity.provider_id,
            metadata={"reason": reason},
        )
        self._emit(EventType.REQUEST_REJECTED, current, reason=reason)

        logger.info("request.rejected", request_id=str(request_id), provider_id=identity.provider_id)
        return current

    # ------------------------------------------------------------------
    # Work progress
    # ------------------------------------------------------------------

    async def start_request(
        self, request_id: uuid.UUID, identity: ProviderIdentity
    ) -> ServiceRequest:
        """Bound provider starts work: ACCEPTED -> IN_PROGRESS."""
        return await self._provider_transition(
            request_id,
            identity,
            event_name="work_started",
            source=RequestStatus.ACCEPTED,
            target=RequestStatus.IN_PROGRESS,
            timestamp_field="started_at",
            event_type=EventType.REQUEST_STARTED,
        )

    async def complete_request(
        self, request_id: uuid.UUID, identity: ProviderIdentity
    ) -> ServiceRequest:
        """Bound provider finishes work: IN_PROGRESS -> COMPLETED. Moves no money."""
        return await self._provider_transition(
            request_id,
            identity,
            event_name="work_completed",
            source=RequestStatus.IN_PROGRESS,
            target=RequestStatus.COMPLETED,
            timestamp_field="completed_at",
            event_type=EventType.REQUEST_COMPLETED,
        )

    async def _provider_transition(
        self,
        request_id: uuid.UUID,
        identity: ProviderIdentity,
        event_name: str,
        source: RequestStatus,
        target: RequestStatus,
        timestamp_field: str,
        event_type: EventType,
    ) -> ServiceRequest:
        request = await self._get_request_or_raise(request_id)
        self._fire_transition(request, event_name)
        if request.provider_id != identity.provider_id:
            raise NotEligibleError(
                "Only the bound provider can update this request",
                details={"provider_id": identity.provider_id, "request_id": str(request_id)},
            )

        now = self._clock()
        won = await guarded_update(
            self._session,
            ServiceRequest,
            request.id,
            ServiceRequest.status == source.value,
            ServiceRequest.provider_id == identity.provider_id,
            status=target.value,
            updated_at=now,
            **{timestamp_field: now},
        )
        current = await self._after_update(request.id, won, target)

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=event_type,
            old_status=source.value,
            new_status=target.value,
            actor=identity.provider_id,
        )
        if event_type == EventType.REQUEST_COMPLETED:
            self._emit(event_type, current)

        logger.info(
            f"request.{target.value.lower()}",
            request_id=str(request_id),
            provider_id=identity.provider_id,
        )
        return current

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_request(
        self, request_id: uuid.UUID, actor: Actor, reason: str | None = None
    ) -> CancellationResult:
        """Cancel a non-terminal request.

        Any payment still holding client money is moved to REFUND_PENDING in
        the same transaction. Executing the refund is an administrative step
        (``EscrowLedger.execute_refund``).
        """
        request = await self._get_request_or_raise(request_id)
        self._fire_transition(request, "request_cancelled")
        self._check_can_cancel(request, actor)

        old_status = request.status
        now = self._clock()
        won = await guarded_update(
            self._session,
            ServiceRequest,
            request.id,
            ServiceRequest.status.in_(source_states(RequestStateMachine, "request_cancelled")),
            status=RequestStatus.CANCELLED.value,
            cancelled_at=now,
            cancel_reason=reason,
            cancelled_by=actor.actor_id,
            updated_at=now,
        )
        current = await self._after_update(request.id, won, RequestStatus.CANCELLED)

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.REQUEST_CANCELLED,
            old_status=old_status,
            new_status=RequestStatus.CANCELLED.value,
            actor=actor.actor_id,
            metadata={"reason": reason, "role": actor.role.value},
        )
        self._emit(EventType.REQUEST_CANCELLED, current, reason=reason)

        refund_payment_id = await self._mark_refund_pending(current, actor, reason)

        logger.info(
            "request.cancelled",
            request_id=str(request_id),
            by=actor.actor_id,
            refund_pending_payment_id=str(refund_payment_id) if refund_payment_id else None,
        )
        return CancellationResult(request=current, refund_pending_payment_id=refund_payment_id)

    def _check_can_cancel(self, request: ServiceRequest, actor: Actor) -> None:
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return
        if actor.role == ActorRole.CLIENT and actor.actor_id == request.client_id:
            return
        if (
            actor.role == ActorRole.PROVIDER
            and request.status in _BOUND_STATUSES
            and actor.actor_id == request.provider_id
        ):
            return
        raise NotEligibleError(
            "Only the client or the bound provider can cancel this request",
            details={"actor_id": actor.actor_id, "request_id": str(request.id)},
        )

    async def _mark_refund_pending(
        self, request: ServiceRequest, actor: Actor, reason: str | None
    ) -> uuid.UUID | None:
        refund_sources = source_states(PaymentStateMachine, "refund_requested")
        marked = None
        for payment in await self._payment_repo.get_in_flight_for_request(request.id):
            old_status = payment.status
            now = self._clock()
            won = await guarded_update(
                self._session,
                Payment,
                payment.id,
                Payment.status.in_(refund_sources),
                status=PaymentStatus.REFUND_PENDING.value,
                refund_requested_at=now,
                auto_release_at=None,
                order_claimed_until=None,
                updated_at=now,
            )
            if not won:
                # Released or failed between the read and the update.
                continue
            await self._event_repo.record(
                entity_type="payment",
                entity_id=payment.id,
                event_type=EventType.PAYMENT_REFUND_PENDING,
                old_status=old_status,
                new_status=PaymentStatus.REFUND_PENDING.value,
                actor=actor.actor_id,
                metadata={"request_id": str(request.id), "reason": reason},
            )
            record_event(
                self._session,
                DomainEvent(
                    event_type=EventType.PAYMENT_REFUND_PENDING,
                    aggregate_id=str(payment.id),
                    payload={
                        "request_id": str(request.id),
                        "amount": str(payment.amount),
                        "previous_status": old_status,
                    },
                    occurred_at=now,
                ),
            )
            logger.warning(
                "escrow.refund_pending",
                payment_id=str(payment.id),
                request_id=str(request.id),
                previous_status=old_status,
            )
            marked = payment.id
        return marked

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_request(self, request_id: uuid.UUID) -> ServiceRequest:
        """Get a request or raise."""
        return await self._get_request_or_raise(request_id)

    async def get_status(self, request_id: uuid.UUID) -> dict:
        """Get request status with allowed events."""
        request = await self._get_request_or_raise(request_id)
        sm = RequestStateMachine(current_status=request.status)
        return {
            "request_id": str(request.id),
            "status": request.status,
            "provider_id": request.provider_id,
            "allowed_events": sm.get_allowed_events(),
        }

    async def get_events(self, request_id: uuid.UUID) -> list[AuditEvent]:
        """Get the audit trail of the request and its payments."""
        await self._get_request_or_raise(request_id)
        payments = await self._payment_repo.get_all_for_request(request_id)
        return await self._event_repo.get_for_request(request_id, [p.id for p in payments])

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_request_or_raise(self, request_id: uuid.UUID) -> ServiceRequest:
        request = await self._request_repo.get_by_id(request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        return request

    async def _after_update(
        self, request_id: uuid.UUID, won: bool, target: RequestStatus
    ) -> ServiceRequest:
        """Reload the row; if the update lost, report what happened instead."""
        current = await refetch(self._session, ServiceRequest, request_id)
        if current is None:
            raise RequestNotFoundError(str(request_id))
        if not won:
            raise InvalidStateTransitionError(current.status, target.value, str(request_id))
        return current

    @staticmethod
    def _raise_accept_loss(request: ServiceRequest) -> None:
        if request.status in _BOUND_STATUSES:
            raise AlreadyAcceptedError(str(request.id), request.status, request.provider_id)
        raise InvalidStateTransitionError(
            request.status, RequestStatus.ACCEPTED.value, str(request.id)
        )

    def _fire_transition(self, request: ServiceRequest, event_name: str) -> None:
        """Validate and fire a state machine transition.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        from statemachine.exceptions import TransitionNotAllowed

        sm = RequestStateMachine(current_status=request.status)
        event_method = getattr(sm, event_name, None)
        if event_method is None:
            raise InvalidStateTransitionError(request.status, event_name, str(request.id))
        try:
            event_method()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(
                request.status, event_name, str(request.id)
            ) from err

    def _emit(self, event_type: EventType, request: ServiceRequest, **extra) -> None:  # noqa: ANN003
        record_event(
            self._session,
            DomainEvent(
                event_type=event_type,
                aggregate_id=str(request.id),
                payload={
                    "client_id": request.client_id,
                    "provider_type": request.provider_type,
                    "provider_id": request.provider_id,
                    "firm_id": request.firm_id,
                    "status": request.status,
                    **extra,
                },
                occurred_at=self._clock(),
            ),
        )
