"""Quote REST API routes.

Routes:
    POST   /api/v1/jobs/{job_id}/quotes    — Submit a quote (fulfiller)
    GET    /api/v1/jobs/{job_id}/quotes    — Quotes on a job
    POST   /api/v1/quotes/{id}/accept      — Accept, assigning the job (requester)
    POST   /api/v1/quotes/{id}/reject      — Decline one quote (requester)
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime
from collections.abc import Callable  # noqa: TC003

from fastapi import APIRouter, Depends

from service_clearinghouse.api.deps import get_actor, get_uow_factory
from service_clearinghouse.domain.actor import Actor  # noqa: TC001
from service_clearinghouse.schemas.marketplace import (
    AcceptQuoteResponse,
    JobResponse,
    QuoteResponse,
    SubmitQuoteRequest,
)
from service_clearinghouse.services.quote_service import QuoteService
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: TC001

router = APIRouter(prefix="/api/v1", tags=["Quotes"])

UowFactory = Callable[[], UnitOfWork]


@router.post(
    "/jobs/{job_id}/quotes",
    response_model=QuoteResponse,
    status_code=201,
    summary="Submit a quote on an open job",
)
async def submit_quote(
    job_id: uuid.UUID,
    request: SubmitQuoteRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> QuoteResponse:
    async with uow_factory() as uow:
        quote = await QuoteService(uow).submit_quote(
            actor, job_id, request.amount, request.timeline, request.message
        )
    return QuoteResponse.model_validate(quote)


@router.get(
    "/jobs/{job_id}/quotes",
    response_model=list[QuoteResponse],
    summary="List quotes on a job",
)
async def list_quotes(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> list[QuoteResponse]:
    async with uow_factory() as uow:
        quotes = await QuoteService(uow).list_quotes_for_job(actor, job_id)
    return [QuoteResponse.model_validate(q) for q in quotes]


@router.post(
    "/quotes/{quote_id}/accept",
    response_model=AcceptQuoteResponse,
    summary="Accept a quote",
)
async def accept_quote(
    quote_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> AcceptQuoteResponse:
    """Assign the job to the quote's fulfiller; other pending quotes are rejected."""
    async with uow_factory() as uow:
        quote, job = await QuoteService(uow).accept_quote(actor, quote_id)
    return AcceptQuoteResponse(
        quote=QuoteResponse.model_validate(quote),
        job=JobResponse.model_validate(job),
    )


@router.post(
    "/quotes/{quote_id}/reject",
    response_model=QuoteResponse,
    summary="Reject a quote",
)
async def reject_quote(
    quote_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> QuoteResponse:
    async with uow_factory() as uow:
        quote = await QuoteService(uow).reject_quote(actor, quote_id)
    return QuoteResponse.model_validate(quote)
