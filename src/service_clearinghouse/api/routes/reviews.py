"""Review REST API routes.

Routes:
    POST   /api/v1/jobs/{job_id}/reviews          — Review a released job (requester)
    GET    /api/v1/reviews                        — Reviews visible to the caller
    GET    /api/v1/fulfillers/{id}/profile        — Completion and rating metrics
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime
from collections.abc import Callable  # noqa: TC003

from fastapi import APIRouter, Depends, Query

from service_clearinghouse.api.deps import get_actor, get_uow_factory
from service_clearinghouse.domain.actor import Actor  # noqa: TC001
from service_clearinghouse.schemas.marketplace import (
    FulfillerProfileResponse,
    ReviewListResponse,
    ReviewResponse,
    SubmitReviewRequest,
)
from service_clearinghouse.services.job_service import MAX_PAGE_SIZE
from service_clearinghouse.services.review_service import ReviewService
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: TC001

router = APIRouter(prefix="/api/v1", tags=["Reviews"])

UowFactory = Callable[[], UnitOfWork]


@router.post(
    "/jobs/{job_id}/reviews",
    response_model=ReviewResponse,
    status_code=201,
    summary="Review the fulfiller of a released job",
)
async def submit_review(
    job_id: uuid.UUID,
    request: SubmitReviewRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> ReviewResponse:
    breakdown = request.breakdown.model_dump() if request.breakdown else None
    async with uow_factory() as uow:
        review = await ReviewService(uow).submit_review(
            actor, job_id, request.rating, request.feedback, breakdown
        )
    return ReviewResponse.model_validate(review)


@router.get("/reviews", response_model=ReviewListResponse, summary="List reviews")
async def list_reviews(
    fulfiller_id: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> ReviewListResponse:
    async with uow_factory() as uow:
        reviews, total = await ReviewService(uow).list_reviews(actor, fulfiller_id, page, limit)
    return ReviewListResponse(
        items=[ReviewResponse.model_validate(r) for r in reviews],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/fulfillers/{fulfiller_id}/profile",
    response_model=FulfillerProfileResponse,
    summary="Get a fulfiller's reputation",
    dependencies=[Depends(get_actor)],
)
async def get_fulfiller_profile(
    fulfiller_id: str,
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> FulfillerProfileResponse:
    async with uow_factory() as uow:
        profile = await ReviewService(uow).get_profile(fulfiller_id)
    return FulfillerProfileResponse.model_validate(profile)
