"""Tests for fulfiller balances and payout requests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import update

from service_clearinghouse.domain.enums import PayoutStatus
from service_clearinghouse.domain.exceptions import (
    ForbiddenError,
    InvalidStateTransitionError,
    UnprocessableError,
)
from service_clearinghouse.infrastructure.database.orm_models import PayoutRequest
from service_clearinghouse.services.payout_service import PayoutService

if TYPE_CHECKING:
    from conftest import Marketplace

    from service_clearinghouse.domain.actor import Actor


async def _request(market: Marketplace, actor: Actor, amount: str) -> PayoutRequest:
    async with market.uow_factory() as uow:
        return await PayoutService(uow).request_payout(
            actor, Decimal(amount), "BDO", "001234567890", "Cy Fulfiller"
        )


async def _balance(market: Marketplace, fulfiller: Actor) -> Decimal:
    async with market.uow_factory() as uow:
        return await PayoutService(uow).available_balance(fulfiller.subject_id)


class TestBalance:
    @pytest.mark.asyncio
    async def test_nothing_before_release(self, market: Marketplace, fulfiller: Actor) -> None:
        await market.completed_job()
        assert await _balance(market, fulfiller) == Decimal("0")

    @pytest.mark.asyncio
    async def test_release_credits_net(self, market: Marketplace, fulfiller: Actor) -> None:
        await market.released_job("900.00")
        assert await _balance(market, fulfiller) == Decimal("810.00")


class TestRequestPayout:
    @pytest.mark.asyncio
    async def test_request_reserves_balance(self, market: Marketplace, fulfiller: Actor) -> None:
        await market.released_job("900.00")
        payout = await _request(market, fulfiller, "500")

        assert payout.status == PayoutStatus.PENDING
        assert await _balance(market, fulfiller) == Decimal("310.00")

    @pytest.mark.asyncio
    async def test_cannot_exceed_balance(self, market: Marketplace, fulfiller: Actor) -> None:
        await market.released_job("900.00")
        with pytest.raises(UnprocessableError, match="available balance of 810.00"):
            await _request(market, fulfiller, "810.01")

    @pytest.mark.asyncio
    async def test_only_fulfillers(self, market: Marketplace, requester: Actor) -> None:
        with pytest.raises(ForbiddenError):
            await _request(market, requester, "10")

    @pytest.mark.asyncio
    async def test_concurrent_requests_cannot_overdraw(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        await market.released_job("900.00")

        results = await asyncio.gather(
            _request(market, fulfiller, "500"),
            _request(market, fulfiller, "500"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(failures) == 1
        assert isinstance(failures[0], UnprocessableError)
        assert await _balance(market, fulfiller) == Decimal("310.00")


class TestPayoutStatus:
    @pytest.mark.asyncio
    async def test_processing_then_completed(
        self, market: Marketplace, fulfiller: Actor, admin: Actor
    ) -> None:
        await market.released_job("900.00")
        payout = await _request(market, fulfiller, "100")

        for status in (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED):
            async with market.uow_factory() as uow:
                payout = await PayoutService(uow).update_payout_status(admin, payout.id, status)

        assert payout.status == PayoutStatus.COMPLETED
        assert payout.processed_at is not None
        assert await _balance(market, fulfiller) == Decimal("710.00")

    @pytest.mark.asyncio
    async def test_cannot_skip_processing(
        self, market: Marketplace, fulfiller: Actor, admin: Actor
    ) -> None:
        await market.released_job()
        payout = await _request(market, fulfiller, "100")
        with pytest.raises(InvalidStateTransitionError, match="processing"):
            async with market.uow_factory() as uow:
                await PayoutService(uow).update_payout_status(
                    admin, payout.id, PayoutStatus.COMPLETED
                )

    @pytest.mark.asyncio
    async def test_rejection_restores_balance(
        self, market: Marketplace, fulfiller: Actor, admin: Actor
    ) -> None:
        await market.released_job("900.00")
        payout = await _request(market, fulfiller, "800")
        async with market.uow_factory() as uow:
            await PayoutService(uow).update_payout_status(
                admin, payout.id, PayoutStatus.REJECTED, notes="Account name mismatch"
            )
        assert await _balance(market, fulfiller) == Decimal("810.00")

    @pytest.mark.asyncio
    async def test_only_admins_update(self, market: Marketplace, fulfiller: Actor) -> None:
        await market.released_job()
        payout = await _request(market, fulfiller, "100")
        with pytest.raises(ForbiddenError):
            async with market.uow_factory() as uow:
                await PayoutService(uow).update_payout_status(
                    fulfiller, payout.id, PayoutStatus.PROCESSING
                )

    @pytest.mark.asyncio
    async def test_stale_pending_payout_expires(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        await market.released_job("900.00")
        stale = await _request(market, fulfiller, "300")
        fresh = await _request(market, fulfiller, "100")
        async with market.uow_factory() as uow:
            await uow.session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == stale.id)
                .values(created_at=datetime.now(UTC) - timedelta(days=20))
            )

        async with market.uow_factory() as uow:
            stale_ids = await PayoutService(uow).stale_pending_ids(14)
        assert stale_ids == [stale.id]

        async with market.uow_factory() as uow:
            assert await PayoutService(uow).expire_payout(stale.id, 14) is True
        async with market.uow_factory() as uow:
            assert await PayoutService(uow).expire_payout(fresh.id, 14) is False

        async with market.uow_factory() as uow:
            payouts, total, _ = await PayoutService(uow).list_payouts(fulfiller)
        statuses = {p.id: p.status for p in payouts}
        assert total == 2
        assert statuses == {stale.id: "rejected", fresh.id: "pending"}
        assert await _balance(market, fulfiller) == Decimal("710.00")

    @pytest.mark.asyncio
    async def test_expire_skips_payout_no_longer_pending(
        self, market: Marketplace, fulfiller: Actor, admin: Actor
    ) -> None:
        await market.released_job("900.00")
        payout = await _request(market, fulfiller, "300")
        async with market.uow_factory() as uow:
            await PayoutService(uow).update_payout_status(
                admin, payout.id, PayoutStatus.PROCESSING
            )

        async with market.uow_factory() as uow:
            assert await PayoutService(uow).expire_payout(payout.id, 14) is False
        async with market.uow_factory() as uow:
            [listed], _, _ = await PayoutService(uow).list_payouts(admin)
        assert listed.status == PayoutStatus.PROCESSING


class TestListPayouts:
    @pytest.mark.asyncio
    async def test_balance_only_for_fulfillers(
        self, market: Marketplace, fulfiller: Actor, admin: Actor
    ) -> None:
        await market.released_job("900.00")
        await _request(market, fulfiller, "10")

        async with market.uow_factory() as uow:
            service = PayoutService(uow)
            _, _, fulfiller_balance = await service.list_payouts(fulfiller)
            _, admin_total, admin_balance = await service.list_payouts(admin)
        assert fulfiller_balance == Decimal("800.00")
        assert (admin_total, admin_balance) == (1, None)

    @pytest.mark.asyncio
    async def test_requesters_refused(self, market: Marketplace, requester: Actor) -> None:
        with pytest.raises(ForbiddenError):
            async with market.uow_factory() as uow:
                await PayoutService(uow).list_payouts(requester)
