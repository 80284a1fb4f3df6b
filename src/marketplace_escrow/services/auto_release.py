"""Auto-Release Scheduler - releases escrow whose hold period has elapsed.

Each due payment is released in its own unit of work, so one failure (or a
crash half-way through a batch) never affects the others. The sweep is safe
to run concurrently with itself, with a review-triggered release, and after a
crash: ``release_on_schedule`` is a guarded transition and losing it counts
as already done.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.clock import utcnow
from marketplace_escrow.infrastructure.database.engine import session_scope
from marketplace_escrow.infrastructure.database.repositories import PaymentRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.escrow_ledger import EscrowLedger, ReleaseOutcome

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.clock import Clock
    from marketplace_escrow.domain.gateway_protocol import PaymentGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class AutoReleaseReport:
    scanned: int = 0
    released: int = 0
    already_done: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "released": self.released,
            "already_done": self.already_done,
            "failed": self.failed,
        }


class AutoReleaseScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._clock = clock

    async def run_once(self, batch_size: int | None = None) -> AutoReleaseReport:
        """Release every payment due now, up to ``batch_size``."""
        limit = batch_size or self._settings.auto_release_batch_size
        async with session_scope(self._session_factory) as session:
            due = await PaymentRepository(session).get_due_for_release(self._clock(), limit)

        released = already_done = failed = 0
        for payment_id in due:
            try:
                async with session_scope(self._session_factory) as session:
                    ledger = EscrowLedger(session, self._gateway, self._settings, self._clock)
                    outcome = await ledger.release_on_schedule(payment_id)
            except Exception as exc:
                failed += 1
                logger.error(
                    "auto_release.payment_failed",
                    payment_id=str(payment_id),
                    error=str(exc),
                    exc_info=True,
                )
                continue
            if outcome == ReleaseOutcome.RELEASED:
                released += 1
            else:
                already_done += 1

        report = AutoReleaseReport(
            scanned=len(due), released=released, already_done=already_done, failed=failed
        )
        logger.info("auto_release.sweep_complete", **report.to_dict())
        return report

    async def run_forever(
        self, interval_seconds: float | None = None, stop_event: asyncio.Event | None = None
    ) -> None:
        """Sweep every ``interval_seconds`` until ``stop_event`` is set."""
        interval = interval_seconds or self._settings.auto_release_interval_seconds
        stop_event = stop_event or asyncio.Event()
        logger.info("auto_release.started", interval_seconds=interval)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                # The scan itself failed (database unreachable); try next tick.
                logger.error("auto_release.sweep_failed", error=str(exc), exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except TimeoutError:
                continue
        logger.info("auto_release.stopped")
