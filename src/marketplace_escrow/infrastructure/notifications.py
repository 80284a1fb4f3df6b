"""Post-commit delivery of domain events.

Services call ``record_event`` while a unit of work is open; the events sit
on ``session.info`` until the session helper has committed, then
``publish_events`` hands them to the configured dispatcher. A rolled-back
unit of work discards them, so subscribers never hear about a transition
that did not happen.

Dispatchers:
    - RedisStreamDispatcher: XADD to a Redis stream (production).
    - LoggingDispatcher: structured log line per event (no Redis available).
    - InMemoryDispatcher: collects events for assertions in tests.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.events import DomainEvent, NotificationDispatcher

logger = get_logger(__name__)

_PENDING_KEY = "pending_events"


class RedisStreamDispatcher:
    """Append events to a capped Redis stream for downstream consumers."""

    def __init__(self, client: aioredis.Redis, stream: str, maxlen: int) -> None:
        self._client = client
        self._stream = stream
        self._maxlen = maxlen

    async def dispatch(self, event: DomainEvent) -> None:
        data = event.to_dict()
        await self._client.xadd(
            self._stream,
            {
                "event_type": data["event_type"],
                "aggregate_id": data["aggregate_id"],
                "occurred_at": data["occurred_at"],
                "payload": json.dumps(data["payload"], default=str),
            },
            maxlen=self._maxlen,
            approximate=True,
        )


class LoggingDispatcher:
    async def dispatch(self, event: DomainEvent) -> None:
        logger.info(
            "event.dispatched",
            event_type=event.event_type.value,
            aggregate_id=event.aggregate_id,
            payload=event.payload,
        )


class InMemoryDispatcher:
    """Keeps every dispatched event; used by tests."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def dispatch(self, event: DomainEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]

    def clear(self) -> None:
        self.events.clear()


_dispatcher: NotificationDispatcher = LoggingDispatcher()


def set_dispatcher(dispatcher: NotificationDispatcher) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def record_event(session: AsyncSession, event: DomainEvent) -> None:
    """Queue an event for delivery after the session commits."""
    session.info.setdefault(_PENDING_KEY, []).append(event)


def discard_events(session: AsyncSession) -> None:
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.debug("event.discarded", count=len(dropped))


async def publish_events(
    session: AsyncSession, dispatcher: NotificationDispatcher | None = None
) -> None:
    """Deliver the committed unit of work's events.

    A failing dispatcher is logged and skipped: the transition is already
    durable and must not be reported as failed.
    """
    events: list[DomainEvent] = session.info.pop(_PENDING_KEY, [])
    dispatcher = dispatcher or _dispatcher
    for evt in events:
        try:
            await dispatcher.dispatch(evt)
        except Exception as exc:
            logger.error(
                "event.dispatch_failed",
                event_type=evt.event_type.value,
                aggregate_id=evt.aggregate_id,
                error=str(exc),
            )
