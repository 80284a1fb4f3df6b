"""Domain events and the notification dispatcher protocol.

The core never delivers notifications itself. It records immutable
``DomainEvent`` objects while a unit of work runs and hands them to a
``NotificationDispatcher`` once the transaction has committed. Delivery
semantics (at-least-once, retries, fan-out to email/SMS/push) belong to the
dispatcher's implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from marketplace_escrow.domain.enums import EventType


@dataclass(frozen=True)
class DomainEvent:
    """An immutable fact about a transition that already happened.

    Attributes:
        event_type: The EventType (e.g., RequestAccepted).
        aggregate_id: UUID string of the request or payment it concerns.
        payload: JSON-serializable context for subscribers.
        occurred_at: When the transition was applied.
    """

    event_type: EventType
    aggregate_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Receives committed domain events.

    Implementations:
        - infrastructure/notifications.py RedisStreamDispatcher (production)
        - infrastructure/notifications.py LoggingDispatcher (no Redis)
        - infrastructure/notifications.py InMemoryDispatcher (tests)
    """

    async def dispatch(self, event: DomainEvent) -> None:
        """Deliver one event. May raise; callers treat failures as non-fatal."""
        ...
