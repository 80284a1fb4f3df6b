"""Tests for the AutoReleaseScheduler sweep."""

from __future__ import annotations

import asyncio

import pytest

from marketplace_escrow.domain.enums import ActorRole, PaymentStatus
from marketplace_escrow.domain.identity import Actor
from marketplace_escrow.services.auto_release import AutoReleaseScheduler
from marketplace_escrow.services.escrow_ledger import EscrowLedger


async def held_payments(market, count: int) -> list:  # noqa: ANN001
    payments = []
    for _ in range(count):
        request = await market.completed_request()
        payments.append(await market.held_payment(request.id))
    return payments


def scheduler_for(market) -> AutoReleaseScheduler:  # noqa: ANN001
    return AutoReleaseScheduler(market.session_factory, market.gateway, market.settings, market.clock)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_releases_only_due_payments(self, market) -> None:  # noqa: ANN001
        early = await held_payments(market, 2)
        market.clock.advance(days=3)
        late = await held_payments(market, 1)
        market.clock.advance(days=4)

        report = await scheduler_for(market).run_once()

        assert report.to_dict() == {"scanned": 2, "released": 2, "already_done": 0, "failed": 0}
        for payment in early:
            assert (await market.payment(payment.id)).status == PaymentStatus.RELEASED
        assert (await market.payment(late[0].id)).status == PaymentStatus.ESCROW_HELD

    @pytest.mark.asyncio
    async def test_second_sweep_finds_nothing(self, market) -> None:  # noqa: ANN001
        payments = await held_payments(market, 1)
        market.clock.advance(days=7)
        scheduler = scheduler_for(market)

        await scheduler.run_once()
        report = await scheduler.run_once()
        assert report.scanned == 0
        assert len(await market.ledger_entries(payments[0].id)) == 1

    @pytest.mark.asyncio
    async def test_batch_size(self, market) -> None:  # noqa: ANN001
        await held_payments(market, 3)
        market.clock.advance(days=7)

        report = await scheduler_for(market).run_once(batch_size=2)
        assert report.scanned == 2
        assert report.released == 2

    @pytest.mark.asyncio
    async def test_disputed_payment_is_skipped(self, market) -> None:  # noqa: ANN001
        (payment,) = await held_payments(market, 1)
        async with market.scope() as session:
            await market.ledger(session).hold_for_dispute(
                payment.id, Actor("ops-1", ActorRole.ADMIN)
            )
        market.clock.advance(days=10)

        report = await scheduler_for(market).run_once()
        assert report.scanned == 0
        assert (await market.payment(payment.id)).status == PaymentStatus.ESCROW_HELD

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, market, monkeypatch) -> None:  # noqa: ANN001
        bad, good = await held_payments(market, 2)
        market.clock.advance(days=7)
        original = EscrowLedger.release_on_schedule

        async def flaky(self, payment_id):  # noqa: ANN001, ANN202
            if payment_id == bad.id:
                raise RuntimeError("ledger unavailable")
            return await original(self, payment_id)

        monkeypatch.setattr(EscrowLedger, "release_on_schedule", flaky)
        report = await scheduler_for(market).run_once()

        assert report.failed == 1
        assert report.released == 1
        assert (await market.payment(bad.id)).status == PaymentStatus.ESCROW_HELD
        assert (await market.payment(good.id)).status == PaymentStatus.RELEASED


class TestRunForever:
    @pytest.mark.asyncio
    async def test_sweeps_until_stopped(self, market) -> None:  # noqa: ANN001
        (payment,) = await held_payments(market, 1)
        market.clock.advance(days=7)
        stop = asyncio.Event()

        task = asyncio.create_task(
            scheduler_for(market).run_forever(interval_seconds=0.05, stop_event=stop)
        )
        for _ in range(100):
            if (await market.payment(payment.id)).status == PaymentStatus.RELEASED:
                break
            await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert (await market.payment(payment.id)).status == PaymentStatus.RELEASED
        assert task.done()
