"""Tests for the RequestLifecycleManager (create, accept, reject, progress, cancel)."""

from __future__ import annotations

import pytest

from marketplace_escrow.domain.enums import ActorRole, PaymentStatus, RequestStatus
from marketplace_escrow.domain.exceptions import (
    AlreadyAcceptedError,
    InvalidStateTransitionError,
    NotEligibleError,
    RequestLimitExceededError,
    RequestNotFoundError,
)
from marketplace_escrow.domain.identity import Actor, ProviderIdentity


class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_new_request_is_pending(self, market, dispatcher) -> None:  # noqa: ANN001
        request = await market.create_request()
        assert request.status == RequestStatus.PENDING
        assert request.provider_id == "pro-1"
        assert request.created_at == market.clock.now
        assert dispatcher.types() == ["RequestCreated"]

    @pytest.mark.asyncio
    async def test_fourth_pending_request_is_refused(self, market) -> None:  # noqa: ANN001
        for _ in range(3):
            await market.create_request()

        with pytest.raises(RequestLimitExceededError) as exc_info:
            await market.create_request()
        assert exc_info.value.details["current_count"] == 3
        assert exc_info.value.details["limit"] == 3

    @pytest.mark.asyncio
    async def test_limit_is_per_client(self, market) -> None:  # noqa: ANN001
        for _ in range(3):
            await market.create_request("client-1")
        other = await market.create_request("client-2")
        assert other.status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_accepted_requests_do_not_count(self, market) -> None:  # noqa: ANN001
        first = await market.create_request()
        await market.create_request()
        await market.create_request()
        await market.accept(first.id)

        fourth = await market.create_request()
        assert fourth.status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelling_frees_a_slot(self, market) -> None:  # noqa: ANN001
        requests = [await market.create_request() for _ in range(3)]
        async with market.scope() as session:
            await market.lifecycle(session).cancel_request(
                requests[0].id, Actor("client-1", ActorRole.CLIENT)
            )
        assert (await market.create_request()).status == RequestStatus.PENDING


class TestAcceptRequest:
    @pytest.mark.asyncio
    async def test_targeted_provider_accepts(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        accepted = await market.accept(request.id)

        assert accepted.status == RequestStatus.ACCEPTED
        assert accepted.provider_id == "pro-1"
        assert accepted.assignment_method == "CLIENT_SPECIFIED"
        assert accepted.accepted_at == market.clock.now

    @pytest.mark.asyncio
    async def test_open_request_binds_whoever_accepts(self, market) -> None:  # noqa: ANN001
        request = await market.create_request(provider_id=None)
        accepted = await market.accept(request.id, "pro-9")
        assert accepted.provider_id == "pro-9"
        assert accepted.assignment_method == "PROVIDER_ACCEPTED"

    @pytest.mark.asyncio
    async def test_second_accept_reports_the_winner(self, market) -> None:  # noqa: ANN001
        request = await market.create_request(provider_id=None)
        await market.accept(request.id, "pro-1")

        with pytest.raises(AlreadyAcceptedError) as exc_info:
            await market.accept(request.id, "pro-2")
        assert exc_info.value.details["bound_provider_id"] == "pro-1"
        assert exc_info.value.code == "ALREADY_ACCEPTED"

    @pytest.mark.asyncio
    async def test_unverified_provider_is_not_eligible(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        async with market.scope() as session:
            with pytest.raises(NotEligibleError):
                await market.lifecycle(session).accept_request(
                    request.id, ProviderIdentity("pro-1", is_verified=False)
                )

    @pytest.mark.asyncio
    async def test_other_provider_cannot_take_targeted_request(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        with pytest.raises(NotEligibleError):
            await market.accept(request.id, "pro-2")

    @pytest.mark.asyncio
    async def test_cancelled_request_cannot_be_accepted(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        async with market.scope() as session:
            await market.lifecycle(session).cancel_request(
                request.id, Actor("client-1", ActorRole.CLIENT)
            )
        with pytest.raises(InvalidStateTransitionError):
            await market.accept(request.id)

    @pytest.mark.asyncio
    async def test_failed_accept_publishes_nothing(self, market, dispatcher) -> None:  # noqa: ANN001
        request = await market.create_request(provider_id=None)
        await market.accept(request.id, "pro-1")
        dispatcher.clear()

        with pytest.raises(AlreadyAcceptedError):
            await market.accept(request.id, "pro-2")
        assert dispatcher.events == []

    @pytest.mark.asyncio
    async def test_unknown_request(self, market) -> None:  # noqa: ANN001
        import uuid

        with pytest.raises(RequestNotFoundError):
            await market.accept(uuid.uuid4())


class TestRejectRequest:
    @pytest.mark.asyncio
    async def test_targeted_provider_rejects(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        async with market.scope() as session:
            rejected = await market.lifecycle(session).reject_request(
                request.id, ProviderIdentity("pro-1", is_verified=True), reason="Fully booked"
            )
        assert rejected.status == RequestStatus.CANCELLED
        assert rejected.cancelled_by == "pro-1"
        assert rejected.cancel_reason == "Fully booked"

    @pytest.mark.asyncio
    async def test_other_provider_cannot_reject(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        async with market.scope() as session:
            with pytest.raises(NotEligibleError):
                await market.lifecycle(session).reject_request(
                    request.id, ProviderIdentity("pro-2", is_verified=True)
                )

    @pytest.mark.asyncio
    async def test_accepted_request_cannot_be_rejected(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        async with market.scope() as session:
            with pytest.raises(InvalidStateTransitionError):
                await market.lifecycle(session).reject_request(
                    request.id, ProviderIdentity("pro-1", is_verified=True)
                )


class TestWorkProgress:
    @pytest.mark.asyncio
    async def test_start_and_complete(self, market, dispatcher) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        started = await market.start(request.id)
        assert started.status == RequestStatus.IN_PROGRESS
        assert started.started_at is not None

        market.clock.advance(hours=2)
        completed = await market.complete(request.id)
        assert completed.status == RequestStatus.COMPLETED
        assert completed.completed_at == market.clock.now
        assert "RequestCompleted" in dispatcher.types()

    @pytest.mark.asyncio
    async def test_only_bound_provider_can_start(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        with pytest.raises(NotEligibleError):
            await market.start(request.id, "pro-2")

    @pytest.mark.asyncio
    async def test_complete_requires_in_progress(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        with pytest.raises(InvalidStateTransitionError):
            await market.complete(request.id)


class TestCancelRequest:
    @pytest.mark.asyncio
    async def test_cancel_moves_held_payment_to_refund_pending(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        payment = await market.held_payment(request.id)
        assert payment.auto_release_at is not None

        async with market.scope() as session:
            result = await market.lifecycle(session).cancel_request(
                request.id, Actor("client-1", ActorRole.CLIENT), reason="Changed plans"
            )

        assert result.request.status == RequestStatus.CANCELLED
        assert result.refund_pending_payment_id == payment.id
        refreshed = await market.payment(payment.id)
        assert refreshed.status == PaymentStatus.REFUND_PENDING
        assert refreshed.auto_release_at is None
        assert refreshed.refund_requested_at == market.clock.now

    @pytest.mark.asyncio
    async def test_cancel_without_payment(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        async with market.scope() as session:
            result = await market.lifecycle(session).cancel_request(
                request.id, Actor("client-1", ActorRole.CLIENT)
            )
        assert result.refund_pending_payment_id is None

    @pytest.mark.asyncio
    async def test_bound_provider_can_cancel(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        async with market.scope() as session:
            result = await market.lifecycle(session).cancel_request(
                request.id, Actor("pro-1", ActorRole.PROVIDER)
            )
        assert result.request.cancelled_by == "pro-1"

    @pytest.mark.asyncio
    async def test_provider_cannot_cancel_before_binding(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        async with market.scope() as session:
            with pytest.raises(NotEligibleError):
                await market.lifecycle(session).cancel_request(
                    request.id, Actor("pro-1", ActorRole.PROVIDER)
                )

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, market) -> None:  # noqa: ANN001
        request = await market.create_request()
        async with market.scope() as session:
            with pytest.raises(NotEligibleError):
                await market.lifecycle(session).cancel_request(
                    request.id, Actor("client-2", ActorRole.CLIENT)
                )

    @pytest.mark.asyncio
    async def test_completed_request_cannot_be_cancelled(self, market) -> None:  # noqa: ANN001
        request = await market.completed_request()
        async with market.scope() as session:
            with pytest.raises(InvalidStateTransitionError):
                await market.lifecycle(session).cancel_request(
                    request.id, Actor("client-1", ActorRole.CLIENT)
                )


class TestReadHelpers:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        async with market.scope() as session:
            status = await market.lifecycle(session).get_status(request.id)
        assert status["status"] == "ACCEPTED"
        assert set(status["allowed_events"]) == {"work_started", "request_cancelled"}

    @pytest.mark.asyncio
    async def test_audit_trail_covers_request_and_payment(self, market) -> None:  # noqa: ANN001
        request = await market.accepted_request()
        await market.held_payment(request.id)

        events = await market.events(request.id)
        assert events[:2] == ["RequestCreated", "RequestAccepted"]
        assert "PaymentOrderCreated" in events
        assert "PaymentEscrowed" in events
