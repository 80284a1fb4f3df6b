"""Tests for the request and payment state machine guards.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. The convenience function validate_transition works.
    4. source_states derives the WHERE-clause state lists correctly.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.state_machine import (
    PaymentStateMachine,
    RequestStateMachine,
    source_states,
    validate_transition,
)


class TestRequestHappyPath:
    """PENDING -> ACCEPTED -> IN_PROGRESS -> COMPLETED."""

    def test_full_lifecycle(self) -> None:
        sm = RequestStateMachine("PENDING")
        assert sm.status == "PENDING"

        sm.provider_accepts()
        assert sm.status == "ACCEPTED"

        sm.work_started()
        assert sm.status == "IN_PROGRESS"

        sm.work_completed()
        assert sm.status == "COMPLETED"


class TestRequestCancellation:
    @pytest.mark.parametrize("status", ["PENDING", "ACCEPTED", "IN_PROGRESS"])
    def test_non_terminal_states_can_cancel(self, status: str) -> None:
        sm = RequestStateMachine(status)
        sm.request_cancelled()
        assert sm.status == "CANCELLED"

    def test_reject_only_from_pending(self) -> None:
        sm = RequestStateMachine("ACCEPTED")
        with pytest.raises(TransitionNotAllowed):
            sm.provider_rejects()


class TestRequestInvalidTransitions:
    def test_completed_is_terminal(self) -> None:
        sm = RequestStateMachine("COMPLETED")
        with pytest.raises(TransitionNotAllowed):
            sm.provider_accepts()
        with pytest.raises(TransitionNotAllowed):
            sm.request_cancelled()

    def test_cancelled_is_terminal(self) -> None:
        sm = RequestStateMachine("CANCELLED")
        assert sm.get_allowed_events() == []

    def test_cannot_skip_in_progress(self) -> None:
        sm = RequestStateMachine("ACCEPTED")
        with pytest.raises(TransitionNotAllowed):
            sm.work_completed()

    def test_accept_twice_is_blocked(self) -> None:
        sm = RequestStateMachine("ACCEPTED")
        with pytest.raises(TransitionNotAllowed):
            sm.provider_accepts()

    def test_unknown_status_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            RequestStateMachine("ARCHIVED")


class TestPaymentTransitions:
    def test_checkout_path(self) -> None:
        sm = PaymentStateMachine("PENDING")
        sm.payment_authorized()
        sm.escrow_confirmed()
        sm.escrow_released()
        sm.shares_distributed()
        assert sm.status == "DISTRIBUTED"

    def test_direct_capture_skips_processing(self) -> None:
        sm = PaymentStateMachine("PENDING")
        sm.escrow_confirmed()
        assert sm.status == "ESCROW_HELD"

    def test_released_payment_cannot_be_refunded(self) -> None:
        sm = PaymentStateMachine("RELEASED")
        with pytest.raises(TransitionNotAllowed):
            sm.refund_requested()

    def test_refund_path(self) -> None:
        sm = PaymentStateMachine("ESCROW_HELD")
        sm.refund_requested()
        sm.refund_completed()
        assert sm.status == "REFUNDED"

    def test_release_requires_escrow(self) -> None:
        sm = PaymentStateMachine("PROCESSING")
        with pytest.raises(TransitionNotAllowed):
            sm.escrow_released()

    @pytest.mark.parametrize("status", ["DISTRIBUTED", "FAILED", "REFUNDED"])
    def test_final_states(self, status: str) -> None:
        assert PaymentStateMachine(status).get_allowed_events() == []


class TestSourceStates:
    def test_cancel_sources(self) -> None:
        assert set(source_states(RequestStateMachine, "request_cancelled")) == {
            "PENDING",
            "ACCEPTED",
            "IN_PROGRESS",
        }

    def test_escrow_confirmed_sources(self) -> None:
        assert set(source_states(PaymentStateMachine, "escrow_confirmed")) == {
            "PENDING",
            "PROCESSING",
        }

    def test_release_source_is_only_escrow_held(self) -> None:
        assert source_states(PaymentStateMachine, "escrow_released") == ("ESCROW_HELD",)

    def test_unknown_event(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            source_states(PaymentStateMachine, "teleport")


class TestValidateTransition:
    def test_valid_transition(self) -> None:
        assert validate_transition("PENDING", "provider_accepts") == "ACCEPTED"

    def test_payment_machine(self) -> None:
        result = validate_transition("ESCROW_HELD", "escrow_released", PaymentStateMachine)
        assert result == "RELEASED"

    def test_invalid_transition(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("COMPLETED", "provider_accepts")

    def test_unknown_event(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("PENDING", "nonexistent_event")
