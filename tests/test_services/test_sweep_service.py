"""Tests for the scheduled expiry and auto-release sweeps."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import update

from service_clearinghouse.domain.enums import (
    ActivityType,
    EscrowStatus,
    JobStatus,
    NotificationType,
    PayoutStatus,
    QuoteStatus,
)
from service_clearinghouse.domain.exceptions import UnprocessableError
from service_clearinghouse.infrastructure.database.orm_models import Job, PayoutRequest, Quote
from service_clearinghouse.services.job_service import JobService
from service_clearinghouse.services.payout_service import PayoutService
from service_clearinghouse.services.quote_service import QuoteService
from service_clearinghouse.services.sweep_service import SweepReport, SweepService

if TYPE_CHECKING:
    import uuid

    from conftest import Marketplace

    from service_clearinghouse.config import Settings
    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.notification_channels import (
        InMemoryNotificationChannel,
    )


async def _backdate(
    market: Marketplace, model: Any, row_id: uuid.UUID, days: int, *cols: str
) -> None:
    when = datetime.now(UTC) - timedelta(days=days)
    async with market.uow_factory() as uow:
        await uow.session.execute(
            update(model).where(model.id == row_id).values({c: when for c in cols})
        )


@pytest.fixture
def sweeps(market: Marketplace, settings: Settings) -> SweepService:
    return SweepService(market.uow_factory, settings)


class TestExpireJobs:
    @pytest.mark.asyncio
    async def test_stale_open_job_expires_with_its_quotes(
        self,
        market: Marketplace,
        sweeps: SweepService,
        fulfiller: Actor,
        requester: Actor,
        channel: InMemoryNotificationChannel,
    ) -> None:
        job = await market.open_job()
        quote = await market.quote(job.id)
        await _backdate(market, Job, job.id, 31, "created_at")

        assert await sweeps.expire_stale_jobs() == 1

        assert (await market.get(job.id)).status == JobStatus.EXPIRED
        async with market.uow_factory() as uow:
            quotes = await QuoteService(uow).list_quotes_for_job(requester, job.id)
        assert [(q.id, q.status) for q in quotes] == [(quote.id, QuoteStatus.REJECTED)]
        types = [p.get("type") for p in channel.for_recipient(fulfiller.subject_id)]
        assert NotificationType.QUOTE_EXPIRED.value in types

    @pytest.mark.asyncio
    async def test_fresh_and_unapproved_jobs_untouched(
        self, market: Marketplace, sweeps: SweepService
    ) -> None:
        fresh = await market.open_job()
        pending = await market.post_job()
        await _backdate(market, Job, pending.id, 60, "created_at")

        assert await sweeps.expire_stale_jobs() == 0
        assert (await market.get(fresh.id)).status == JobStatus.OPEN
        assert (await market.get(pending.id)).status == JobStatus.PENDING_VALIDATION


class TestExpireQuotes:
    @pytest.mark.asyncio
    async def test_only_stale_quotes_expire(
        self,
        market: Marketplace,
        sweeps: SweepService,
        requester: Actor,
        other_fulfiller: Actor,
    ) -> None:
        job = await market.open_job()
        stale = await market.quote(job.id)
        fresh = await market.quote(job.id, fulfiller=other_fulfiller)
        await _backdate(market, Quote, stale.id, 8, "created_at")

        assert await sweeps.expire_stale_quotes() == 1

        async with market.uow_factory() as uow:
            quotes = await QuoteService(uow).list_quotes_for_job(requester, job.id)
        statuses = {q.id: q.status for q in quotes}
        assert statuses == {stale.id: "rejected", fresh.id: "pending"}
        assert (await market.get(job.id)).status == JobStatus.OPEN


class TestAutoRelease:
    @pytest.mark.asyncio
    async def test_completed_job_released_after_grace_period(
        self,
        market: Marketplace,
        sweeps: SweepService,
        requester: Actor,
    ) -> None:
        job = await market.completed_job("900.00")
        await _backdate(market, Job, job.id, 8, "updated_at")

        assert await sweeps.release_stale_escrow() == 1

        job = await market.get(job.id)
        assert job.escrow_status == EscrowStatus.RELEASED
        assert job.released_amount == Decimal("900.00")
        async with market.uow_factory() as uow:
            events = await JobService(uow).get_activity(requester, job.id)
        assert events[-1].event_type == ActivityType.ESCROW_AUTO_RELEASED
        assert events[-1].actor == "system"

    @pytest.mark.asyncio
    async def test_recently_completed_job_waits(
        self, market: Marketplace, sweeps: SweepService
    ) -> None:
        job = await market.completed_job()
        await _backdate(market, Job, job.id, 3, "updated_at")

        assert await sweeps.release_stale_escrow() == 0
        assert (await market.get(job.id)).escrow_status == EscrowStatus.FUNDED


class TestExpirePayouts:
    async def _stale_payouts(self, market: Marketplace, fulfiller: Actor) -> list[PayoutRequest]:
        await market.released_job("900.00")
        payouts = []
        for amount, age in (("300", 20), ("200", 16)):
            async with market.uow_factory() as uow:
                payout = await PayoutService(uow).request_payout(
                    fulfiller, Decimal(amount), "BDO", "001234567890", "Cy Fulfiller"
                )
            await _backdate(market, PayoutRequest, payout.id, age, "created_at")
            payouts.append(payout)
        return payouts

    async def _statuses(self, market: Marketplace, admin: Actor) -> dict[uuid.UUID, str]:
        async with market.uow_factory() as uow:
            payouts, _, _ = await PayoutService(uow).list_payouts(admin)
        return {p.id: p.status for p in payouts}

    @pytest.mark.asyncio
    async def test_payout_moved_after_selection_is_skipped(
        self,
        market: Marketplace,
        sweeps: SweepService,
        monkeypatch: pytest.MonkeyPatch,
        fulfiller: Actor,
        admin: Actor,
    ) -> None:
        first, second = await self._stale_payouts(market, fulfiller)
        expire_payout = PayoutService.expire_payout
        moved = False

        async def admin_moves_second_payout(
            service: PayoutService, payout_id: uuid.UUID, older_than_days: int
        ) -> bool:
            nonlocal moved
            if not moved:
                moved = True
                async with market.uow_factory() as uow:
                    await uow.session.execute(
                        update(PayoutRequest)
                        .where(PayoutRequest.id == second.id)
                        .values(status=PayoutStatus.PROCESSING.value)
                    )
            return await expire_payout(service, payout_id, older_than_days)

        monkeypatch.setattr(PayoutService, "expire_payout", admin_moves_second_payout)

        report = SweepReport()
        assert await sweeps.expire_stale_pending_payouts(report) == 1

        assert report.failures == []
        assert await self._statuses(market, admin) == {
            first.id: PayoutStatus.REJECTED,
            second.id: PayoutStatus.PROCESSING,
        }

    @pytest.mark.asyncio
    async def test_failing_payout_does_not_block_the_rest(
        self,
        market: Marketplace,
        sweeps: SweepService,
        monkeypatch: pytest.MonkeyPatch,
        fulfiller: Actor,
        admin: Actor,
    ) -> None:
        first, second = await self._stale_payouts(market, fulfiller)
        expire_payout = PayoutService.expire_payout

        async def conflicting_first_payout(
            service: PayoutService, payout_id: uuid.UUID, older_than_days: int
        ) -> bool:
            if payout_id == first.id:
                raise UnprocessableError(
                    "Payout changed while this operation was running, please retry",
                    code="CONCURRENT_MODIFICATION",
                )
            return await expire_payout(service, payout_id, older_than_days)

        monkeypatch.setattr(PayoutService, "expire_payout", conflicting_first_payout)

        report = SweepReport()
        assert await sweeps.expire_stale_pending_payouts(report) == 1

        assert report.failures == [f"expire_payout:{first.id}:CONCURRENT_MODIFICATION"]
        assert await self._statuses(market, admin) == {
            first.id: PayoutStatus.PENDING,
            second.id: PayoutStatus.REJECTED,
        }
        async with market.uow_factory() as uow:
            balance = await PayoutService(uow).available_balance(fulfiller.subject_id)
        assert balance == Decimal("510.00")



class TestRunAll:
    @pytest.mark.asyncio
    async def test_report_counts_every_sweep(
        self,
        market: Marketplace,
        sweeps: SweepService,
        fulfiller: Actor,
    ) -> None:
        stale_job = await market.open_job()
        await _backdate(market, Job, stale_job.id, 45, "created_at")

        unreleased = await market.completed_job("900.00")
        await _backdate(market, Job, unreleased.id, 10, "updated_at")

        report = await sweeps.run_all()

        assert report.expired_jobs == 1
        assert report.auto_released == 1
        assert report.expired_quotes == 0
        assert report.expired_payouts == 0
        async with market.uow_factory() as uow:
            balance = await PayoutService(uow).available_balance(fulfiller.subject_id)
        assert balance == Decimal("810.00")
        assert report.failures == []
        assert report.as_dict()["auto_released"] == 1
