"""Tests for ReviewService and the escrow release a review triggers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from marketplace_escrow.domain.enums import PaymentStatus
from marketplace_escrow.domain.exceptions import (
    AlreadyReviewedError,
    InvalidStateTransitionError,
    NotEligibleError,
    ValidationError,
)
from marketplace_escrow.services.escrow_ledger import ReleaseOutcome
from marketplace_escrow.services.review_service import ReviewService


async def submit(market, request_id, client_id="client-1", rating=5, comment=None):  # noqa: ANN001, ANN201
    async with market.scope() as session:
        service = ReviewService(session, market.ledger(session), market.clock)
        return await service.submit_review(request_id, client_id, rating, comment)


class TestSubmitReview:
    @pytest.mark.asyncio
    async def test_review_releases_escrow(self, market, dispatcher) -> None:  # noqa: ANN001
        request = await market.completed_request()
        payment = await market.held_payment(request.id)

        result = await submit(market, request.id, rating=5, comment="Great work")
        assert result.review.rating == 5
        assert result.release == ReleaseOutcome.RELEASED

        released = await market.payment(payment.id)
        assert released.status == PaymentStatus.RELEASED
        assert released.release_trigger == "REVIEW"
        assert released.released_at == market.clock.now

        entries = await market.ledger_entries(payment.id)
        assert [(e.beneficiary_id, e.amount) for e in entries] == [("pro-1", Decimal("900.00"))]
        assert "PaymentReleased" in dispatcher.types()

    @pytest.mark.asyncio
    async def test_one_review_per_request(self, market) -> None:  # noqa: ANN001
        request = await market.completed_request()
        await market.held_payment(request.id)
        await submit(market, request.id)

        with pytest.raises(AlreadyReviewedError):
            await submit(market, request.id, rating=1)

    @pytest.mark.asyncio
    async def test_review_after_scheduled_release(self, market) -> None:  # noqa: ANN001
        request = await market.completed_request()
        payment = await market.held_payment(request.id)
        market.clock.advance(days=8)
        async with market.scope() as session:
            await market.ledger(session).release_on_schedule(payment.id)

        result = await submit(market, request.id)
        assert result.release == ReleaseOutcome.ALREADY_RELEASED
        assert len(await market.ledger_entries(payment.id)) == 1

    @pytest.mark.asyncio
    async def test_review_without_payment(self, market) -> None:  # noqa: ANN001
        request = await market.completed_request()
        result = await submit(market, request.id)
        assert result.release is None

    @pytest.mark.asyncio
    async def test_unpaid_order_is_not_released(self, market) -> None:  # noqa: ANN001
        request = await market.completed_request()
        payment = await market.create_order(request.id)

        result = await submit(market, request.id)
        assert result.release == ReleaseOutcome.NOT_HELD
        assert (await market.payment(payment.id)).status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_request_must_be_completed(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        with pytest.raises(InvalidStateTransitionError):
            await submit(market, request.id)

    @pytest.mark.asyncio
    async def test_only_the_client_reviews(self, market) -> None:  # noqa: ANN001
        request = await market.completed_request()
        with pytest.raises(NotEligibleError):
            await submit(market, request.id, client_id="client-2")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6])
    async def test_rating_range(self, market, rating: int) -> None:  # noqa: ANN001
        request = await market.completed_request()
        with pytest.raises(ValidationError):
            await submit(market, request.id, rating=rating)
