"""Tests for the MCP tools: they share the service layer and map errors to results."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from service_clearinghouse.mcp_server import tools
from service_clearinghouse.services import unit_of_work

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import Marketplace

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.services.unit_of_work import UnitOfWork

DESCRIPTION = "Replace the kitchen faucet and fix the slow drain under the sink."
PITCH = "Licensed plumber, can bring all parts and finish in one visit."


@pytest.fixture(autouse=True)
def _tool_units_of_work(
    monkeypatch: pytest.MonkeyPatch, uow_factory: Callable[[], UnitOfWork]
) -> None:
    monkeypatch.setattr(unit_of_work, "new_unit_of_work", uow_factory)


class TestTools:
    @pytest.mark.asyncio
    async def test_post_and_quote(
        self,
        market: Marketplace,
        requester: Actor,
        fulfiller: Actor,
    ) -> None:
        posted = await tools.post_job(
            requester.subject_id, "Fix kitchen sink", DESCRIPTION, "plumbing", 1500.0
        )
        assert posted["status"] == "pending_validation"
        assert posted["risk_score"] == 40

        job = await market.open_job()
        quote = await tools.submit_quote(
            fulfiller.subject_id, str(job.id), 900.0, "1 day", PITCH
        )
        assert quote["status"] == "pending"

        checked = await tools.check_job(requester.subject_id, "requester", str(job.id))
        assert [q["id"] for q in checked["quotes"]] == [quote["id"]]

        accepted = await tools.accept_quote(requester.subject_id, quote["id"])
        assert accepted["status"] == "assigned"
        assert accepted["fulfiller_id"] == fulfiller.subject_id

    @pytest.mark.asyncio
    async def test_browse_open_marketplace(
        self, market: Marketplace, fulfiller: Actor
    ) -> None:
        job = await market.open_job()
        await market.post_job()

        result = await tools.browse_jobs(fulfiller.subject_id, "fulfiller")
        assert result["total"] == 1
        assert result["jobs"][0]["id"] == str(job.id)

    @pytest.mark.asyncio
    async def test_review_released_job(
        self, market: Marketplace, requester: Actor, fulfiller: Actor
    ) -> None:
        job = await market.released_job()

        review = await tools.review_job(
            requester.subject_id, str(job.id), 4, "Good work, a little late to arrive."
        )
        assert review["rating"] == 4
        assert review["fulfiller_id"] == fulfiller.subject_id

        again = await tools.review_job(
            requester.subject_id, str(job.id), 4, "Good work, a little late to arrive."
        )
        assert again["code"] == "CONFLICT"


class TestToolErrors:
    @pytest.mark.asyncio
    async def test_domain_errors_become_results(self, market: Marketplace) -> None:
        job = await market.post_job()
        result = await tools.submit_quote("fulfiller-cy", str(job.id), 900.0, "1 day", PITCH)
        assert result == {"error": "This job is not accepting quotes", "code": "UNPROCESSABLE"}

    @pytest.mark.asyncio
    async def test_bad_identifiers(self) -> None:
        result = await tools.check_job("admin-ed", "admin", "not-a-uuid")
        assert result["code"] == "VALIDATION_ERROR"

        result = await tools.browse_jobs("someone", "superuser")
        assert result["code"] == "UNAUTHORIZED"

        result = await tools.browse_jobs("admin-ed", "admin", status="archived")
        assert result == {"error": "Unknown job status 'archived'", "code": "VALIDATION_ERROR"}
