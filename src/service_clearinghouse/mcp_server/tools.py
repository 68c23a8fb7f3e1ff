"""MCP Tool definitions for the Service Clearinghouse.

These tools expose the marketplace via the Model Context Protocol so that
assistant agents can act for a requester, fulfiller or admin. Every tool
takes the caller's ``subject_id`` and ``role`` as asserted by the identity
gateway in front of this server.

Tools:
    - post_job: Post a job for admin approval
    - browse_jobs: List jobs visible to the caller
    - check_job: Current job, escrow and quote state
    - submit_quote: Bid on an open job
    - accept_quote: Accept a quote and assign the job
    - fund_escrow: Fund the escrow of an assigned job
    - start_job / complete_job: Fulfiller progress updates
    - release_escrow: Release the escrow to the fulfiller
    - review_job: Rate the fulfiller of a released job
    - open_dispute: Dispute an active job
    - request_payout: Withdraw available earnings

The MCP server is mounted into FastAPI at /mcp via app.mount().
Each tool runs in its own UnitOfWork (no FastAPI Depends available).
Business-rule rejections come back as ``{"error": message, "code": code}``.
"""

from __future__ import annotations

import uuid
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from mcp.server.fastmcp import FastMCP

from service_clearinghouse.domain.actor import Actor
from service_clearinghouse.domain.enums import JobStatus, Role
from service_clearinghouse.domain.exceptions import (
    ClearinghouseError,
    UnauthorizedError,
    ValidationError,
)
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.schemas.ledger import PayoutResponse
from service_clearinghouse.schemas.marketplace import (
    DisputeResponse,
    JobResponse,
    QuoteResponse,
    ReviewResponse,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Service Clearinghouse",
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _actor(subject_id: str, role: str) -> Actor:
    if not subject_id:
        raise UnauthorizedError("subject_id is required")
    try:
        return Actor(subject_id=subject_id, role=Role(role.lower()))
    except ValueError as exc:
        raise UnauthorizedError(f"Unknown role '{role}'") from exc


def _uuid(value: str, name: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a UUID") from exc


def _money(value: float | str, name: str = "amount") -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"{name} must be a number") from exc


def _job(job: object) -> dict:
    return JobResponse.model_validate(job).model_dump(mode="json")


async def _run(tool: str, operation: Callable[[UnitOfWork], Awaitable[dict]]) -> dict:
    """Run one tool call in its own unit of work, mapping errors to results."""
    from service_clearinghouse.services.unit_of_work import new_unit_of_work

    try:
        async with new_unit_of_work() as uow:
            result = await operation(uow)
    except ClearinghouseError as exc:
        logger.info("mcp.tool_rejected", tool=tool, code=exc.code, error=exc.message)
        return {"error": exc.message, "code": exc.code}
    except Exception:
        logger.exception("mcp.tool_failed", tool=tool)
        return {"error": "An unexpected error occurred", "code": "INTERNAL_ERROR"}
    return result


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@mcp.tool()
async def post_job(
    subject_id: str,
    title: str,
    description: str,
    category: str,
    budget: float,
) -> dict:
    """Post a job as a requester. It is listed once an admin approves it.

    Args:
        subject_id: Your requester id.
        title: Short title (5-100 characters).
        description: What needs doing (at least 20 characters).
        category: Service category, e.g. 'plumbing' or 'cleaning'.
        budget: Maximum you will pay.

    Returns:
        The job, including its job_id and risk score.
    """
    from service_clearinghouse.services.job_service import JobService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.REQUESTER)
        job = await JobService(uow).create_job(
            actor, title, description, category, _money(budget, "budget")
        )
        return {**_job(job), "message": "Job posted. It will be listed once approved."}

    return await _run("post_job", operation)


@mcp.tool()
async def browse_jobs(
    subject_id: str,
    role: str,
    status: str = "",
    category: str = "",
    page: int = 1,
) -> dict:
    """List jobs visible to you: fulfillers see the open marketplace by default.

    Args:
        subject_id: Your id.
        role: 'requester', 'fulfiller' or 'admin'.
        status: Optional job status filter.
        category: Optional category filter.
        page: Page number (20 jobs per page).
    """
    from service_clearinghouse.services.job_service import JobService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, role)
        try:
            status_filter = JobStatus(status) if status else None
        except ValueError as exc:
            raise ValidationError(f"Unknown job status '{status}'") from exc
        jobs, total = await JobService(uow).list_jobs(
            actor, status_filter, category or None, page, 20
        )
        return {"jobs": [_job(j) for j in jobs], "total": total, "page": page}

    return await _run("browse_jobs", operation)


@mcp.tool()
async def check_job(subject_id: str, role: str, job_id: str) -> dict:
    """Check a job's status, escrow status and the quotes you can see.

    Args:
        subject_id: Your id.
        role: 'requester', 'fulfiller' or 'admin'.
        job_id: UUID of the job.
    """
    from service_clearinghouse.services.job_service import JobService
    from service_clearinghouse.services.quote_service import QuoteService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, role)
        job = await JobService(uow).get_job(actor, _uuid(job_id, "job_id"))
        quotes = await QuoteService(uow).list_quotes_for_job(actor, job.id)
        return {
            **_job(job),
            "quotes": [QuoteResponse.model_validate(q).model_dump(mode="json") for q in quotes],
        }

    return await _run("check_job", operation)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


@mcp.tool()
async def submit_quote(
    subject_id: str,
    job_id: str,
    amount: float,
    timeline: str,
    message: str,
) -> dict:
    """Bid on an open job as a fulfiller.

    Args:
        subject_id: Your fulfiller id.
        job_id: UUID of the open job.
        amount: Your price.
        timeline: When you can do it, e.g. '2 days'.
        message: Pitch to the requester (20-1000 characters).
    """
    from service_clearinghouse.services.quote_service import QuoteService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.FULFILLER)
        quote = await QuoteService(uow).submit_quote(
            actor, _uuid(job_id, "job_id"), _money(amount), timeline, message
        )
        return QuoteResponse.model_validate(quote).model_dump(mode="json")

    return await _run("submit_quote", operation)


@mcp.tool()
async def accept_quote(subject_id: str, quote_id: str) -> dict:
    """Accept a quote on your job. The job is assigned to that fulfiller.

    Args:
        subject_id: Your requester id.
        quote_id: UUID of the quote.

    Returns:
        The assigned job. Next step: fund the escrow.
    """
    from service_clearinghouse.services.quote_service import QuoteService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.REQUESTER)
        _, job = await QuoteService(uow).accept_quote(actor, _uuid(quote_id, "quote_id"))
        return {**_job(job), "message": "Quote accepted. Next step: fund the escrow."}

    return await _run("accept_quote", operation)


# ---------------------------------------------------------------------------
# Escrow & work
# ---------------------------------------------------------------------------


@mcp.tool()
async def fund_escrow(subject_id: str, job_id: str, amount: float = 0) -> dict:
    """Fund the escrow of your assigned job.

    Args:
        subject_id: Your requester id.
        job_id: UUID of the job.
        amount: Leave 0, or pass the accepted quote amount to confirm it.

    Returns:
        Either the funded amount, or a checkout redirect_url to complete payment.
    """
    from service_clearinghouse.config import get_settings
    from service_clearinghouse.services.escrow_service import EscrowService
    from service_clearinghouse.services.payment_service import build_payment_gateway

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.REQUESTER)
        settings = get_settings()
        result = await EscrowService(uow, build_payment_gateway(settings), settings).fund_escrow(
            actor, _uuid(job_id, "job_id"), _money(amount) if amount else None
        )
        return {
            "job_id": str(result.job_id),
            "amount": str(result.amount),
            "funded": result.simulated,
            "redirect_url": result.redirect_url,
            "session_ref": result.session_ref,
        }

    return await _run("fund_escrow", operation)


@mcp.tool()
async def start_job(subject_id: str, job_id: str, before_photos: list[str] | None = None) -> dict:
    """Start work on a job assigned to you (escrow must be funded to finish it).

    Args:
        subject_id: Your fulfiller id.
        job_id: UUID of the job.
        before_photos: Up to 3 photo URLs of the site before work.
    """
    from service_clearinghouse.services.escrow_service import EscrowService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.FULFILLER)
        job = await EscrowService(uow).start_job(
            actor, _uuid(job_id, "job_id"), before_photos or []
        )
        return _job(job)

    return await _run("start_job", operation)


@mcp.tool()
async def complete_job(
    subject_id: str, job_id: str, after_photos: list[str] | None = None
) -> dict:
    """Mark your job as completed; the requester is asked to release payment.

    Args:
        subject_id: Your fulfiller id.
        job_id: UUID of the job.
        after_photos: Up to 3 photo URLs of the finished work.
    """
    from service_clearinghouse.services.escrow_service import EscrowService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.FULFILLER)
        job = await EscrowService(uow).mark_complete(
            actor, _uuid(job_id, "job_id"), after_photos or []
        )
        return _job(job)

    return await _run("complete_job", operation)


@mcp.tool()
async def release_escrow(subject_id: str, job_id: str) -> dict:
    """Release the escrow of your completed job to the fulfiller.

    Args:
        subject_id: Your requester id.
        job_id: UUID of the job.
    """
    from service_clearinghouse.services.escrow_service import EscrowService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.REQUESTER)
        job = await EscrowService(uow).release_escrow(actor, _uuid(job_id, "job_id"))
        return {**_job(job), "message": "Payment released to the fulfiller."}

    return await _run("release_escrow", operation)


@mcp.tool()
async def review_job(subject_id: str, job_id: str, rating: int, feedback: str) -> dict:
    """Rate the fulfiller of your job once its escrow has been released.

    Args:
        subject_id: Your requester id.
        job_id: UUID of the job.
        rating: 1 (poor) to 5 (excellent).
        feedback: 10 to 500 characters.
    """
    from service_clearinghouse.services.review_service import ReviewService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.REQUESTER)
        review = await ReviewService(uow).submit_review(
            actor, _uuid(job_id, "job_id"), rating, feedback
        )
        return ReviewResponse.model_validate(review).model_dump(mode="json")

    return await _run("review_job", operation)


# ---------------------------------------------------------------------------
# Disputes & payouts
# ---------------------------------------------------------------------------


@mcp.tool()
async def open_dispute(
    subject_id: str,
    role: str,
    job_id: str,
    reason: str,
    evidence: list[str] | None = None,
) -> dict:
    """Dispute an assigned, in-progress or completed job you take part in.

    Args:
        subject_id: Your id.
        role: 'requester' or 'fulfiller'.
        job_id: UUID of the job.
        reason: What went wrong (at least 20 characters).
        evidence: Up to 5 evidence URLs.
    """
    from service_clearinghouse.services.dispute_service import DisputeService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, role)
        dispute = await DisputeService(uow).open_dispute(
            actor, _uuid(job_id, "job_id"), reason, evidence or []
        )
        return DisputeResponse.model_validate(dispute).model_dump(mode="json")

    return await _run("open_dispute", operation)


@mcp.tool()
async def request_payout(
    subject_id: str,
    amount: float,
    bank_name: str,
    account_number: str,
    account_name: str,
) -> dict:
    """Withdraw settled earnings to a bank account.

    Args:
        subject_id: Your fulfiller id.
        amount: Amount to withdraw; at most your available balance.
        bank_name: Bank or e-wallet name.
        account_number: Account number.
        account_name: Name on the account.
    """
    from service_clearinghouse.services.payout_service import PayoutService

    async def operation(uow: UnitOfWork) -> dict:
        actor = _actor(subject_id, Role.FULFILLER)
        payouts = PayoutService(uow)
        payout = await payouts.request_payout(
            actor, _money(amount), bank_name, account_number, account_name
        )
        return {
            **PayoutResponse.model_validate(payout).model_dump(mode="json"),
            "available_balance": str(await payouts.available_balance(actor.subject_id)),
        }

    return await _run("request_payout", operation)
