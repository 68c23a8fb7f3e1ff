"""Tests for the escrow engine: funding, work, release and admin override.

These tests verify that:
    1. Funding holds the amount as a pending settlement.
    2. Only the assigned fulfiller moves the work forward.
    3. Release and partial release settle the ledger exactly once.
    4. Admin overrides force a funded escrow either way.
    5. The gateway path funds only once per checkout session.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from service_clearinghouse.domain.enums import (
    EscrowAction,
    EscrowStatus,
    JobStatus,
    NotificationType,
    TransactionStatus,
)
from service_clearinghouse.domain.exceptions import (
    ForbiddenError,
    InvalidStateTransitionError,
    PaymentGatewayError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.infrastructure.database.repositories import (
    FulfillerProfileRepository,
    PaymentRepository,
)
from service_clearinghouse.services.escrow_service import EscrowService
from service_clearinghouse.services.payout_service import PayoutService
from service_clearinghouse.services.settlement_service import SettlementLedger

if TYPE_CHECKING:
    from conftest import FakeGateway, Marketplace

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.database.orm_models import (
        Job,
        SettlementTransaction,
    )
    from service_clearinghouse.infrastructure.notification_channels import (
        InMemoryNotificationChannel,
    )


async def _transactions(market: Marketplace, job: Job) -> list[SettlementTransaction]:
    async with market.uow_factory() as uow:
        return await SettlementLedger(uow.session).for_job(job)


class TestFunding:
    @pytest.mark.asyncio
    async def test_fund_holds_accepted_quote_amount(
        self,
        market: Marketplace,
        requester: Actor,
        fulfiller: Actor,
        channel: InMemoryNotificationChannel,
    ) -> None:
        job = await market.funded_job("900.00")

        assert job.status == JobStatus.ASSIGNED
        assert job.escrow_status == EscrowStatus.FUNDED
        assert job.escrow_amount == Decimal("900.00")

        [txn] = await _transactions(market, job)
        assert txn.status == TransactionStatus.PENDING
        assert (txn.gross_amount, txn.commission_amount, txn.net_amount) == (
            Decimal("900.00"),
            Decimal("90.00"),
            Decimal("810.00"),
        )

        fulfiller_types = [p.get("type") for p in channel.for_recipient(fulfiller.subject_id)]
        requester_types = [p.get("type") for p in channel.for_recipient(requester.subject_id)]
        assert NotificationType.ESCROW_FUNDED.value in fulfiller_types
        assert NotificationType.PAYMENT_CONFIRMED.value in requester_types

    @pytest.mark.asyncio
    async def test_fund_requires_assignment(self, market: Marketplace, requester: Actor) -> None:
        job = await market.open_job()
        with pytest.raises(InvalidStateTransitionError, match="after a fulfiller is assigned"):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).fund_escrow(requester, job.id)

    @pytest.mark.asyncio
    async def test_fund_twice_refused(self, market: Marketplace, requester: Actor) -> None:
        job = await market.funded_job()
        with pytest.raises(InvalidStateTransitionError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).fund_escrow(requester, job.id)
        assert len(await _transactions(market, job)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["1.00", "899.99", "1000.00"])
    async def test_amount_must_match_accepted_quote(
        self, market: Marketplace, requester: Actor, amount: str
    ) -> None:
        job = await market.assigned_job("900.00")
        with pytest.raises(ValidationError, match="exactly 900.00"):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).fund_escrow(
                    requester, job.id, Decimal(amount)
                )
        job = await market.get(job.id)
        assert job.escrow_status == EscrowStatus.NOT_FUNDED
        assert await _transactions(market, job) == []

    @pytest.mark.asyncio
    async def test_matching_amount_accepted(self, market: Marketplace, requester: Actor) -> None:
        job = await market.assigned_job("900.00")
        async with market.uow_factory() as uow:
            result = await EscrowService(uow, settings=market.settings).fund_escrow(
                requester, job.id, Decimal("900")
            )
        assert result.amount == Decimal("900.00")
        assert (await market.get(job.id)).escrow_amount == Decimal("900.00")

    @pytest.mark.asyncio
    async def test_only_owner_funds(self, market: Marketplace, other_requester: Actor) -> None:
        job = await market.assigned_job()
        with pytest.raises(ForbiddenError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).fund_escrow(
                    other_requester, job.id
                )


class TestWork:
    @pytest.mark.asyncio
    async def test_only_assigned_fulfiller_starts(
        self, market: Marketplace, other_fulfiller: Actor
    ) -> None:
        job = await market.funded_job()
        with pytest.raises(ForbiddenError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).start_job(
                    other_fulfiller, job.id
                )

    @pytest.mark.asyncio
    async def test_cannot_complete_before_starting(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        job = await market.funded_job()
        with pytest.raises(InvalidStateTransitionError, match="in progress"):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).mark_complete(
                    fulfiller, job.id
                )

    @pytest.mark.asyncio
    async def test_cannot_start_twice(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        job = await market.in_progress_job()
        with pytest.raises(InvalidStateTransitionError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).start_job(fulfiller, job.id)

    @pytest.mark.asyncio
    async def test_evidence_capped_at_three(self, market: Marketplace, fulfiller: Actor) -> None:
        job = await market.funded_job()
        photos = [f"https://img.test/before-{i}.jpg" for i in range(5)]
        async with market.uow_factory() as uow:
            job = await EscrowService(uow, settings=market.settings).start_job(
                fulfiller, job.id, photos
            )
        assert job.before_evidence == photos[:3]
        assert job.status == JobStatus.IN_PROGRESS


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_completes_settlement(
        self,
        market: Marketplace,
        fulfiller: Actor,
        channel: InMemoryNotificationChannel,
    ) -> None:
        job = await market.released_job("900.00")

        assert job.escrow_status == EscrowStatus.RELEASED
        assert job.released_amount == Decimal("900.00")
        [txn] = await _transactions(market, job)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.net_amount == Decimal("810.00")

        released = [
            p
            for p in channel.for_recipient(fulfiller.subject_id)
            if p.get("type") == NotificationType.ESCROW_RELEASED.value
        ]
        assert Decimal(released[0]["net_amount"]) == Decimal("810")

    @pytest.mark.asyncio
    async def test_release_refreshes_fulfiller_metrics(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        await market.released_job()
        async with market.uow_factory() as uow:
            profile = await FulfillerProfileRepository(uow.session).get(fulfiller.subject_id)
        assert profile is not None
        assert (profile.completed_jobs, profile.completion_rate) == (1, 100)

    @pytest.mark.asyncio
    async def test_release_requires_completion(
        self, market: Marketplace, requester: Actor
    ) -> None:
        job = await market.in_progress_job()
        with pytest.raises(UnprocessableError, match="marked as completed"):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).release_escrow(
                    requester, job.id
                )

    @pytest.mark.asyncio
    async def test_release_only_once(self, market: Marketplace, requester: Actor) -> None:
        job = await market.released_job()
        with pytest.raises(InvalidStateTransitionError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).release_escrow(
                    requester, job.id
                )
        assert len(await _transactions(market, job)) == 1

    @pytest.mark.asyncio
    async def test_partial_release(self, market: Marketplace, requester: Actor) -> None:
        job = await market.completed_job("900.00")
        async with market.uow_factory() as uow:
            job = await EscrowService(uow, settings=market.settings).partial_release(
                requester, job.id, Decimal("600")
            )

        assert job.escrow_status == EscrowStatus.RELEASED
        assert job.released_amount == Decimal("600.00")
        txns = await _transactions(market, job)
        by_status = {t.status: t for t in txns}
        assert by_status["refunded"].gross_amount == Decimal("900.00")
        assert by_status["completed"].gross_amount == Decimal("600.00")
        assert by_status["completed"].net_amount == Decimal("540.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("amount", "error"),
        [("0", ValidationError), ("1500", ValidationError), ("950", UnprocessableError)],
    )
    async def test_partial_release_bounds(
        self,
        market: Marketplace,
        requester: Actor,
        amount: str,
        error: type[Exception],
    ) -> None:
        job = await market.completed_job("900.00")
        with pytest.raises(error):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).partial_release(
                    requester, job.id, Decimal(amount)
                )
        assert (await market.get(job.id)).escrow_status == EscrowStatus.FUNDED

    @pytest.mark.asyncio
    async def test_concurrent_releases_settle_once(
        self, market: Marketplace, requester: Actor, fulfiller: Actor
    ) -> None:
        job = await market.completed_job("900.00")

        async def release() -> Job:
            async with market.uow_factory() as uow:
                return await EscrowService(uow, settings=market.settings).release_escrow(
                    requester, job.id
                )

        results = await asyncio.gather(release(), release(), return_exceptions=True)

        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateTransitionError)
        [txn] = await _transactions(market, job)
        assert (txn.status, txn.net_amount) == (TransactionStatus.COMPLETED, Decimal("810.00"))
        async with market.uow_factory() as uow:
            balance = await PayoutService(uow).available_balance(fulfiller.subject_id)
        assert balance == Decimal("810.00")

    @pytest.mark.asyncio
    async def test_releases_of_two_jobs_share_one_profile(
        self, market: Marketplace, requester: Actor, fulfiller: Actor
    ) -> None:
        first = await market.completed_job()
        second = await market.completed_job()

        async def release(job: Job) -> Job:
            async with market.uow_factory() as uow:
                return await EscrowService(uow, settings=market.settings).release_escrow(
                    requester, job.id
                )

        await asyncio.gather(release(first), release(second))

        async with market.uow_factory() as uow:
            profile = await FulfillerProfileRepository(uow.session).get(fulfiller.subject_id)
        assert profile is not None
        assert (profile.completed_jobs, profile.completion_rate) == (2, 100)

    @pytest.mark.asyncio
    async def test_profile_metrics_overwritten(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        async with market.uow_factory() as uow:
            profiles = FulfillerProfileRepository(uow.session)
            await profiles.save_metrics(fulfiller.subject_id, 3, 100)
            profile = await profiles.save_metrics(fulfiller.subject_id, 3, 75)
        assert (profile.completed_jobs, profile.completion_rate) == (3, 75)

    @pytest.mark.asyncio
    async def test_rating_write_keeps_completion_metrics(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        async with market.uow_factory() as uow:
            profiles = FulfillerProfileRepository(uow.session)
            await profiles.save_metrics(fulfiller.subject_id, 4, 80)
            profile = await profiles.save_rating(fulfiller.subject_id, Decimal("4.5"), 2)
        assert (profile.completed_jobs, profile.completion_rate) == (4, 80)
        assert (profile.avg_rating, profile.review_count) == (Decimal("4.5"), 2)

    @pytest.mark.asyncio
    async def test_release_after_partial_release_refused(
        self, market: Marketplace, requester: Actor
    ) -> None:
        job = await market.completed_job("900.00")
        async with market.uow_factory() as uow:
            await EscrowService(uow, settings=market.settings).partial_release(
                requester, job.id, Decimal("600")
            )

        with pytest.raises(InvalidStateTransitionError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).release_escrow(
                    requester, job.id
                )
        job = await market.get(job.id)
        assert job.released_amount == Decimal("600.00")
        completed = [t for t in await _transactions(market, job) if t.status == "completed"]
        assert len(completed) == 1

    @pytest.mark.asyncio
    async def test_auto_release_skips_ineligible_job(self, market: Marketplace) -> None:
        job = await market.in_progress_job()
        async with market.uow_factory() as uow:
            released = await EscrowService(uow, settings=market.settings).auto_release(job.id)
        assert released is False


class TestAdminOverride:
    @pytest.mark.asyncio
    async def test_override_refund(
        self,
        market: Marketplace,
        admin: Actor,
        requester: Actor,
        fulfiller: Actor,
        channel: InMemoryNotificationChannel,
    ) -> None:
        job = await market.funded_job()
        async with market.uow_factory() as uow:
            job = await EscrowService(uow, settings=market.settings).admin_override_escrow(
                admin, job.id, EscrowAction.REFUND, "Fulfiller unreachable"
            )

        assert (job.status, job.escrow_status) == (JobStatus.REFUNDED, EscrowStatus.REFUNDED)
        assert [t.status for t in await _transactions(market, job)] == ["refunded"]
        for party in (requester, fulfiller):
            types = [p.get("type") for p in channel.for_recipient(party.subject_id)]
            assert NotificationType.ESCROW_REFUNDED.value in types

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", [EscrowAction.REFUND, EscrowAction.RELEASE])
    async def test_second_override_after_refund_refused(
        self, market: Marketplace, admin: Actor, action: EscrowAction
    ) -> None:
        job = await market.funded_job()
        async with market.uow_factory() as uow:
            await EscrowService(uow, settings=market.settings).admin_override_escrow(
                admin, job.id, EscrowAction.REFUND, "Fulfiller unreachable"
            )

        with pytest.raises(UnprocessableError, match="funded"):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).admin_override_escrow(
                    admin, job.id, action, "Second attempt"
                )
        job = await market.get(job.id)
        assert (job.status, job.escrow_status) == (JobStatus.REFUNDED, EscrowStatus.REFUNDED)
        assert [t.status for t in await _transactions(market, job)] == ["refunded"]

    @pytest.mark.asyncio
    async def test_override_release(self, market: Marketplace, admin: Actor) -> None:
        job = await market.in_progress_job()
        async with market.uow_factory() as uow:
            job = await EscrowService(uow, settings=market.settings).admin_override_escrow(
                admin, job.id, EscrowAction.RELEASE, "Requester confirmed by phone"
            )

        assert (job.status, job.escrow_status) == (JobStatus.COMPLETED, EscrowStatus.RELEASED)
        assert [t.status for t in await _transactions(market, job)] == ["completed"]

    @pytest.mark.asyncio
    async def test_override_requires_admin(self, market: Marketplace, requester: Actor) -> None:
        job = await market.funded_job()
        with pytest.raises(ForbiddenError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).admin_override_escrow(
                    requester, job.id, EscrowAction.REFUND, "Changed my mind"
                )

    @pytest.mark.asyncio
    async def test_override_requires_reason(self, market: Marketplace, admin: Actor) -> None:
        job = await market.funded_job()
        with pytest.raises(ValidationError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).admin_override_escrow(
                    admin, job.id, EscrowAction.REFUND, "no"
                )

    @pytest.mark.asyncio
    async def test_override_requires_funded_escrow(
        self, market: Marketplace, admin: Actor
    ) -> None:
        job = await market.assigned_job()
        with pytest.raises(UnprocessableError, match="funded"):
            async with market.uow_factory() as uow:
                await EscrowService(uow, settings=market.settings).admin_override_escrow(
                    admin, job.id, EscrowAction.RELEASE, "Force it through"
                )


class TestGatewayFunding:
    @pytest.mark.asyncio
    async def test_checkout_then_confirmation(
        self,
        market: Marketplace,
        requester: Actor,
        fake_gateway: FakeGateway,
    ) -> None:
        job = await market.assigned_job("900.00")
        async with market.uow_factory() as uow:
            result = await EscrowService(uow, fake_gateway, market.settings).fund_escrow(
                requester, job.id
            )

        assert result.simulated is False
        assert result.redirect_url == f"https://checkout.test/{result.session_ref}"
        assert (await market.get(job.id)).escrow_status == EscrowStatus.NOT_FUNDED

        async with market.uow_factory() as uow:
            funded = await EscrowService(
                uow, fake_gateway, market.settings
            ).confirm_escrow_funded(result.session_ref, "pay_1", "gcash")
        assert funded is True
        job = await market.get(job.id)
        assert job.escrow_status == EscrowStatus.FUNDED
        assert job.escrow_amount == Decimal("900.00")

        # Redelivery of the same confirmation is a no-op
        async with market.uow_factory() as uow:
            again = await EscrowService(
                uow, fake_gateway, market.settings
            ).confirm_escrow_funded(result.session_ref, "pay_1", "gcash")
        assert again is False
        assert len(await _transactions(market, job)) == 1

    @pytest.mark.asyncio
    async def test_unknown_session_ignored(
        self, market: Marketplace, fake_gateway: FakeGateway
    ) -> None:
        async with market.uow_factory() as uow:
            funded = await EscrowService(
                uow, fake_gateway, market.settings
            ).confirm_escrow_funded("cs_missing")
        assert funded is False

    @pytest.mark.asyncio
    async def test_gateway_failure_changes_nothing(
        self,
        market: Marketplace,
        requester: Actor,
        fake_gateway: FakeGateway,
    ) -> None:
        job = await market.assigned_job()
        fake_gateway.fail_with = PaymentGatewayError("Payment gateway timed out, please retry")

        with pytest.raises(PaymentGatewayError):
            async with market.uow_factory() as uow:
                await EscrowService(uow, fake_gateway, market.settings).fund_escrow(
                    requester, job.id
                )
        assert (await market.get(job.id)).escrow_status == EscrowStatus.NOT_FUNDED

    @pytest.mark.asyncio
    async def test_refresh_confirms_paid_session(
        self,
        market: Marketplace,
        requester: Actor,
        fake_gateway: FakeGateway,
    ) -> None:
        job = await market.assigned_job()
        async with market.uow_factory() as uow:
            result = await EscrowService(uow, fake_gateway, market.settings).fund_escrow(
                requester, job.id
            )

        async with market.uow_factory() as uow:
            pending = await EscrowService(
                uow, fake_gateway, market.settings
            ).refresh_payment_status(requester, result.session_ref)
        assert pending is False

        fake_gateway.paid.add(result.session_ref)
        async with market.uow_factory() as uow:
            funded = await EscrowService(
                uow, fake_gateway, market.settings
            ).refresh_payment_status(requester, result.session_ref)
        assert funded is True

        async with market.uow_factory() as uow:
            payment = await PaymentRepository(uow.session).get_by_session_ref(result.session_ref)
        assert payment is not None
        assert (payment.status, payment.payment_method) == ("paid", "gcash")

    @pytest.mark.asyncio
    async def test_refresh_without_gateway(
        self,
        market: Marketplace,
        requester: Actor,
        fake_gateway: FakeGateway,
    ) -> None:
        job = await market.assigned_job()
        async with market.uow_factory() as uow:
            result = await EscrowService(uow, fake_gateway, market.settings).fund_escrow(
                requester, job.id
            )

        with pytest.raises(UnprocessableError) as exc_info:
            async with market.uow_factory() as uow:
                await EscrowService(uow, None, market.settings).refresh_payment_status(
                    requester, result.session_ref
                )
        assert exc_info.value.code == "PAYMENT_GATEWAY_DISABLED"
