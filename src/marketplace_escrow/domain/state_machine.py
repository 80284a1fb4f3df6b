"""Service Request and Payment State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or the scheduler does, an illegal transition
(e.g., COMPLETED -> ACCEPTED) will raise TransitionNotAllowed.

The machines are the single source of truth for the transition tables. The
storage layer does not trust them alone: every exclusive transition is also
re-checked in the database by a conditional UPDATE whose WHERE clause lists
the legal source states, obtained here through ``source_states``.

Service request transition table:
    PENDING      -> ACCEPTED     (provider_accepts)
    PENDING      -> CANCELLED    (provider_rejects)
    ACCEPTED     -> IN_PROGRESS  (work_started)
    IN_PROGRESS  -> COMPLETED    (work_completed)
    PENDING      -> CANCELLED    (request_cancelled)
    ACCEPTED     -> CANCELLED    (request_cancelled)
    IN_PROGRESS  -> CANCELLED    (request_cancelled)

Payment transition table:
    PENDING         -> PROCESSING      (payment_authorized)
    PENDING         -> ESCROW_HELD     (escrow_confirmed)
    PROCESSING      -> ESCROW_HELD     (escrow_confirmed)
    PENDING         -> FAILED          (payment_failed)
    PROCESSING      -> FAILED          (payment_failed)
    ESCROW_HELD     -> RELEASED        (escrow_released)
    RELEASED        -> DISTRIBUTED     (shares_distributed)
    PENDING         -> REFUND_PENDING  (refund_requested)
    PROCESSING      -> REFUND_PENDING  (refund_requested)
    ESCROW_HELD     -> REFUND_PENDING  (refund_requested)
    REFUND_PENDING  -> REFUNDED        (refund_completed)
"""

from __future__ import annotations

from functools import lru_cache

from statemachine import State, StateMachine


class _GuardMixin:
    """Shared construction from a stored status string."""

    def _validated_start(self, current_status: str) -> str:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        return current_status

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [str(event.id) for event in self.allowed_events]


class RequestStateMachine(_GuardMixin, StateMachine):
    """State machine that guards service request lifecycle transitions.

    Usage:
        sm = RequestStateMachine(current_status="PENDING")
        sm.provider_accepts()  # transitions to ACCEPTED
        sm.status              # "ACCEPTED"
    """

    # --- States ---
    PENDING = State("PENDING", initial=True)
    ACCEPTED = State("ACCEPTED")
    IN_PROGRESS = State("IN_PROGRESS")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    # --- Events / Transitions ---
    provider_accepts = PENDING.to(ACCEPTED)
    provider_rejects = PENDING.to(CANCELLED)
    work_started = ACCEPTED.to(IN_PROGRESS)
    work_completed = IN_PROGRESS.to(COMPLETED)
    request_cancelled = (
        PENDING.to(CANCELLED) | ACCEPTED.to(CANCELLED) | IN_PROGRESS.to(CANCELLED)
    )

    def __init__(self, current_status: str = "PENDING") -> None:
        super().__init__(start_value=self._validated_start(current_status))


class PaymentStateMachine(_GuardMixin, StateMachine):
    """State machine that guards the escrow ledger entry of a payment."""

    # --- States ---
    PENDING = State("PENDING", initial=True)
    PROCESSING = State("PROCESSING")
    ESCROW_HELD = State("ESCROW_HELD")
    RELEASED = State("RELEASED")
    DISTRIBUTED = State("DISTRIBUTED", final=True)
    FAILED = State("FAILED", final=True)
    REFUND_PENDING = State("REFUND_PENDING")
    REFUNDED = State("REFUNDED", final=True)

    # --- Events / Transitions ---

    # Gateway progress
    payment_authorized = PENDING.to(PROCESSING)
    escrow_confirmed = PENDING.to(ESCROW_HELD) | PROCESSING.to(ESCROW_HELD)
    payment_failed = PENDING.to(FAILED) | PROCESSING.to(FAILED)

    # Release and firm distribution
    escrow_released = ESCROW_HELD.to(RELEASED)
    shares_distributed = RELEASED.to(DISTRIBUTED)

    # Cancellation leaves the refund to an administrator
    refund_requested = (
        PENDING.to(REFUND_PENDING)
        | PROCESSING.to(REFUND_PENDING)
        | ESCROW_HELD.to(REFUND_PENDING)
    )
    refund_completed = REFUND_PENDING.to(REFUNDED)

    def __init__(self, current_status: str = "PENDING") -> None:
        super().__init__(start_value=self._validated_start(current_status))


@lru_cache(maxsize=64)
def source_states(machine_cls: type[StateMachine], event_name: str) -> tuple[str, ...]:
    """Return every state value from which ``event_name`` may fire.

    Used to build the ``status IN (...)`` guard of conditional updates so the
    database check and the in-memory machine can never disagree.
    """
    sources = []
    for state in machine_cls.states:
        sm = machine_cls(current_status=state.value)
        if event_name in sm.get_allowed_events():
            sources.append(str(state.value))
    if not sources:
        raise ValueError(f"Unknown event '{event_name}' for {machine_cls.__name__}")
    return tuple(sources)


def validate_transition(
    current_status: str,
    event_name: str,
    machine_cls: type[StateMachine] = RequestStateMachine,
) -> str:
    """Validate a state transition and return the new status.

    This is a convenience function that creates a temporary state machine,
    fires the named event, and returns the resulting status string.

    Args:
        current_status: Current status value.
        event_name: The event to fire (e.g., "provider_accepts").
        machine_cls: Which machine to validate against.

    Returns:
        The new status string after the transition.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_cls(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
