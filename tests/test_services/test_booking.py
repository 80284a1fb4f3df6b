"""Tests for the AvailabilityBookingGuard."""

from __future__ import annotations

import uuid
from datetime import date, time

import pytest

from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    NotEligibleError,
    SlotAlreadyBookedError,
    SlotNotFoundError,
    ValidationError,
)
from marketplace_escrow.services.booking_service import AvailabilityBookingGuard

TOMORROW = date(2026, 3, 3)


async def create_slot(market, provider_id="pro-1", day=TOMORROW, start=time(10), end=time(11)):  # noqa: ANN001, ANN201
    async with market.scope() as session:
        return await AvailabilityBookingGuard(session, market.clock).create_slot(
            provider_id, day, start, end
        )


async def book(market, slot_id, request_id):  # noqa: ANN001, ANN201
    async with market.scope() as session:
        return await AvailabilityBookingGuard(session, market.clock).book_slot(slot_id, request_id)


class TestCreateSlot:
    @pytest.mark.asyncio
    async def test_create(self, market) -> None:  # noqa: ANN001
        slot = await create_slot(market)
        assert slot.is_booked is False
        assert slot.request_id is None

    @pytest.mark.asyncio
    async def test_end_must_follow_start(self, market) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError):
            await create_slot(market, start=time(11), end=time(10))

    @pytest.mark.asyncio
    async def test_past_slot_rejected(self, market) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError):
            await create_slot(market, day=date(2026, 3, 2), start=time(8), end=time(9))

    @pytest.mark.asyncio
    async def test_overlap_rejected(self, market) -> None:  # noqa: ANN001
        existing = await create_slot(market)
        with pytest.raises(ValidationError) as exc_info:
            await create_slot(market, start=time(10, 30), end=time(11, 30))
        assert exc_info.value.details["conflicting_slot_id"] == str(existing.id)

    @pytest.mark.asyncio
    async def test_adjacent_slots_allowed(self, market) -> None:  # noqa: ANN001
        await create_slot(market)
        second = await create_slot(market, start=time(11), end=time(12))
        assert second.start_time == time(11)

    @pytest.mark.asyncio
    async def test_other_providers_do_not_overlap(self, market) -> None:  # noqa: ANN001
        await create_slot(market)
        other = await create_slot(market, provider_id="pro-2")
        assert other.provider_id == "pro-2"


class TestBookSlot:
    @pytest.mark.asyncio
    async def test_book(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        slot = await create_slot(market)

        booked = await book(market, slot.id, request.id)
        assert booked.is_booked is True
        assert booked.request_id == request.id
        assert booked.booked_at == market.clock.now

    @pytest.mark.asyncio
    async def test_second_booking_names_the_holder(self, market) -> None:  # noqa: ANN001
        first = await market.accepted_request()
        second = await market.accepted_request()
        slot = await create_slot(market)
        await book(market, slot.id, first.id)

        with pytest.raises(SlotAlreadyBookedError) as exc_info:
            await book(market, slot.id, second.id)
        assert exc_info.value.details["booked_request_id"] == str(first.id)

    @pytest.mark.asyncio
    async def test_started_slot_cannot_be_booked(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        slot = await create_slot(market)
        market.clock.advance(days=1, hours=1)

        with pytest.raises(ValidationError):
            await book(market, slot.id, request.id)

    @pytest.mark.asyncio
    async def test_slot_of_another_provider(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        slot = await create_slot(market, provider_id="pro-2")
        with pytest.raises(NotEligibleError):
            await book(market, slot.id, request.id)

    @pytest.mark.asyncio
    async def test_cancelled_request_cannot_book(self, market) -> None:  # noqa: ANN001
        from marketplace_escrow.domain.enums import ActorRole
        from marketplace_escrow.domain.identity import Actor

        request = await market.create_request()
        async with market.scope() as session:
            await market.lifecycle(session).cancel_request(
                request.id, Actor("client-1", ActorRole.CLIENT)
            )
        slot = await create_slot(market)
        with pytest.raises(InvalidStateTransitionError):
            await book(market, slot.id, request.id)

    @pytest.mark.asyncio
    async def test_unknown_slot(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        with pytest.raises(SlotNotFoundError):
            await book(market, uuid.uuid4(), request.id)

    @pytest.mark.asyncio
    async def test_booking_is_audited(self, market) -> None:  # noqa: ANN001
        from marketplace_escrow.infrastructure.database.repositories import EventRepository

        request = await market.accepted_request()
        slot = await create_slot(market)
        await book(market, slot.id, request.id)

        async with market.scope() as session:
            events = await EventRepository(session).get_by_entity("slot", slot.id)
        assert [(e.old_status, e.new_status) for e in events] == [("AVAILABLE", "BOOKED")]
        assert events[0].actor == "client-1"
