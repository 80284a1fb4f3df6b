"""Availability Booking Guard - exclusive slot booking.

A slot's ``is_booked`` flag flips false -> true exactly once. The flip is a
single conditional UPDATE; a caller that loses the race is told which
request holds the slot.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from typing import TYPE_CHECKING

from marketplace_escrow.domain.clock import utcnow
from marketplace_escrow.domain.enums import EventType, RequestStatus
from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    NotEligibleError,
    RequestNotFoundError,
    SlotAlreadyBookedError,
    SlotNotFoundError,
    ValidationError,
)
from marketplace_escrow.infrastructure.database.exclusive import guarded_update, refetch
from marketplace_escrow.infrastructure.database.orm_models import AvailabilitySlot
from marketplace_escrow.infrastructure.database.repositories import (
    EventRepository,
    RequestRepository,
    SlotRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.clock import Clock

logger = get_logger(__name__)

ENTITY = "slot"

_TERMINAL_REQUEST_STATUSES = frozenset(
    {RequestStatus.COMPLETED.value, RequestStatus.CANCELLED.value}
)


def slot_start(slot: AvailabilitySlot) -> datetime:
    """Slot dates and times are stored naive and read as UTC."""
    return datetime.combine(slot.date, slot.start_time, tzinfo=UTC)


class AvailabilityBookingGuard:
    def __init__(self, session: AsyncSession, clock: Clock = utcnow) -> None:
        self._session = session
        self._clock = clock
        self._slot_repo = SlotRepository(session)
        self._request_repo = RequestRepository(session)
        self._event_repo = EventRepository(session)

    async def create_slot(
        self, provider_id: str, day: date, start_time: time, end_time: time
    ) -> AvailabilitySlot:
        """Publish a bookable time window.

        Raises:
            ValidationError: end is not after start, the slot is in the past,
                or it overlaps one of the provider's slots that day.
        """
        if end_time <= start_time:
            raise ValidationError(
                "Slot end time must be after its start time",
                details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
            )
        if datetime.combine(day, start_time, tzinfo=UTC) <= self._clock():
            raise ValidationError(
                "Cannot create a slot in the past",
                details={"date": day.isoformat(), "start_time": start_time.isoformat()},
            )

        for existing in await self._slot_repo.get_for_provider_on(provider_id, day):
            if start_time < existing.end_time and existing.start_time < end_time:
                raise ValidationError(
                    "Slot overlaps an existing slot",
                    details={"conflicting_slot_id": str(existing.id)},
                )

        slot = await self._slot_repo.create(
            AvailabilitySlot(
                provider_id=provider_id,
                date=day,
                start_time=start_time,
                end_time=end_time,
                created_at=self._clock(),
            )
        )
        logger.info(
            "slot.created",
            slot_id=str(slot.id),
            provider_id=provider_id,
            date=day.isoformat(),
        )
        return slot

    async def book_slot(self, slot_id: uuid.UUID, request_id: uuid.UUID) -> AvailabilitySlot:
        """Bind a future slot to a request. Exactly one concurrent caller wins.

        Raises:
            SlotAlreadyBookedError: The slot is taken (details carry the
                request that holds it).
            SlotNotFoundError / RequestNotFoundError: Missing rows.
            ValidationError: The slot has already started.
        """
        slot = await self._slot_repo.get_by_id(slot_id)
        if slot is None:
            raise SlotNotFoundError(str(slot_id))
        request = await self._request_repo.get_by_id(request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        if request.status in _TERMINAL_REQUEST_STATUSES:
            raise InvalidStateTransitionError(request.status, "book_slot", str(request_id))
        if request.provider_id is not None and request.provider_id != slot.provider_id:
            raise NotEligibleError(
                "Slot belongs to a different provider than the request",
                details={"slot_provider_id": slot.provider_id, "provider_id": request.provider_id},
            )

        now = self._clock()
        if slot_start(slot) <= now:
            raise ValidationError(
                "Cannot book a slot that has already started", details={"slot_id": str(slot_id)}
            )
        if slot.is_booked:
            raise SlotAlreadyBookedError(
                str(slot_id), str(slot.request_id) if slot.request_id else None
            )

        won = await guarded_update(
            self._session,
            AvailabilitySlot,
            slot.id,
            AvailabilitySlot.is_booked.is_(False),
            is_booked=True,
            request_id=request.id,
            booked_at=now,
        )
        current = await refetch(self._session, AvailabilitySlot, slot.id)
        if not won:
            logger.info("slot.booking_lost", slot_id=str(slot_id), request_id=str(request_id))
            raise SlotAlreadyBookedError(
                str(slot_id), str(current.request_id) if current.request_id else None
            )

        await self._event_repo.record(
            entity_type=ENTITY,
            entity_id=current.id,
            event_type=EventType.SLOT_BOOKED,
            old_status="AVAILABLE",
            new_status="BOOKED",
            actor=request.client_id,
            metadata={"request_id": str(request.id)},
        )
        logger.info("slot.booked", slot_id=str(slot_id), request_id=str(request_id))
        return current
