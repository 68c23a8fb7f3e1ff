"""Tests for quoting and quote acceptance, including racing accepts."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from service_clearinghouse.domain.enums import JobStatus, NotificationType, QuoteStatus
from service_clearinghouse.domain.exceptions import (
    ConflictError,
    ForbiddenError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.services.quote_service import QuoteService

if TYPE_CHECKING:
    from conftest import Marketplace

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.notification_channels import (
        InMemoryNotificationChannel,
    )


def _types(channel: InMemoryNotificationChannel, recipient: Actor) -> list[str | None]:
    return [p.get("type") for p in channel.for_recipient(recipient.subject_id)]


class TestSubmitQuote:
    @pytest.mark.asyncio
    async def test_quote_on_open_job(
        self,
        market: Marketplace,
        requester: Actor,
        channel: InMemoryNotificationChannel,
    ) -> None:
        job = await market.open_job()
        quote = await market.quote(job.id, "850.50")

        assert quote.status == QuoteStatus.PENDING
        assert quote.amount == Decimal("850.50")
        assert NotificationType.QUOTE_RECEIVED.value in _types(channel, requester)

    @pytest.mark.asyncio
    async def test_job_must_be_open(self, market: Marketplace) -> None:
        job = await market.post_job()
        with pytest.raises(UnprocessableError, match="not accepting quotes"):
            await market.quote(job.id)

    @pytest.mark.asyncio
    async def test_one_quote_per_fulfiller(self, market: Marketplace) -> None:
        job = await market.open_job()
        await market.quote(job.id)
        with pytest.raises(ConflictError):
            await market.quote(job.id, "800.00")

    @pytest.mark.asyncio
    async def test_requesters_cannot_quote(self, market: Marketplace, requester: Actor) -> None:
        job = await market.open_job()
        with pytest.raises(ForbiddenError):
            await market.quote(job.id, fulfiller=requester)

    @pytest.mark.asyncio
    async def test_message_length(self, market: Marketplace, fulfiller: Actor) -> None:
        job = await market.open_job()
        with pytest.raises(ValidationError, match="Message"):
            async with market.uow_factory() as uow:
                await QuoteService(uow).submit_quote(
                    fulfiller, job.id, Decimal("100"), "1 day", "Cheap and fast"
                )


class TestAcceptQuote:
    @pytest.mark.asyncio
    async def test_accept_assigns_job_and_rejects_the_rest(
        self,
        market: Marketplace,
        requester: Actor,
        fulfiller: Actor,
        other_fulfiller: Actor,
        channel: InMemoryNotificationChannel,
    ) -> None:
        job = await market.open_job()
        winner = await market.quote(job.id, "900.00")
        loser = await market.quote(job.id, "950.00", fulfiller=other_fulfiller)

        async with market.uow_factory() as uow:
            quote, job = await QuoteService(uow).accept_quote(requester, winner.id)

        assert quote.status == QuoteStatus.ACCEPTED
        assert job.status == JobStatus.ASSIGNED
        assert job.fulfiller_id == fulfiller.subject_id

        async with market.uow_factory() as uow:
            quotes = await QuoteService(uow).list_quotes_for_job(requester, job.id)
        statuses = {q.id: q.status for q in quotes}
        assert statuses == {winner.id: "accepted", loser.id: "rejected"}

        assert NotificationType.QUOTE_ACCEPTED.value in _types(channel, fulfiller)
        assert NotificationType.QUOTE_REJECTED.value in _types(channel, other_fulfiller)

    @pytest.mark.asyncio
    async def test_only_job_owner_accepts(
        self, market: Marketplace, other_requester: Actor
    ) -> None:
        job = await market.open_job()
        quote = await market.quote(job.id)
        with pytest.raises(ForbiddenError):
            async with market.uow_factory() as uow:
                await QuoteService(uow).accept_quote(other_requester, quote.id)

    @pytest.mark.asyncio
    async def test_processed_quote_cannot_be_accepted(
        self, market: Marketplace, requester: Actor
    ) -> None:
        job = await market.open_job()
        quote = await market.quote(job.id)
        async with market.uow_factory() as uow:
            await QuoteService(uow).reject_quote(requester, quote.id)

        with pytest.raises(UnprocessableError, match="already been processed"):
            async with market.uow_factory() as uow:
                await QuoteService(uow).accept_quote(requester, quote.id)

    @pytest.mark.asyncio
    async def test_racing_accepts_assign_exactly_once(
        self,
        market: Marketplace,
        requester: Actor,
        other_fulfiller: Actor,
    ) -> None:
        job = await market.open_job()
        first = await market.quote(job.id, "900.00")
        second = await market.quote(job.id, "950.00", fulfiller=other_fulfiller)

        async def accept(quote_id: object) -> object:
            async with market.uow_factory() as uow:
                return await QuoteService(uow).accept_quote(requester, quote_id)

        results = await asyncio.gather(
            accept(first.id), accept(second.id), return_exceptions=True
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(failures) == 1
        assert isinstance(failures[0], UnprocessableError)

        async with market.uow_factory() as uow:
            quotes = await QuoteService(uow).list_quotes_for_job(requester, job.id)
        assert [q.status for q in quotes].count("accepted") == 1
        assert (await market.get(job.id)).status == JobStatus.ASSIGNED


class TestListQuotes:
    @pytest.mark.asyncio
    async def test_fulfillers_see_only_their_own(
        self, market: Marketplace, fulfiller: Actor, other_fulfiller: Actor
    ) -> None:
        job = await market.open_job()
        mine = await market.quote(job.id)
        await market.quote(job.id, fulfiller=other_fulfiller)

        async with market.uow_factory() as uow:
            quotes = await QuoteService(uow).list_quotes_for_job(fulfiller, job.id)
        assert [q.id for q in quotes] == [mine.id]

    @pytest.mark.asyncio
    async def test_other_requesters_refused(
        self, market: Marketplace, other_requester: Actor
    ) -> None:
        job = await market.open_job()
        with pytest.raises(ForbiddenError):
            async with market.uow_factory() as uow:
                await QuoteService(uow).list_quotes_for_job(other_requester, job.id)
