"""Job and escrow REST API routes.

Each handler runs exactly one service operation inside its own UnitOfWork.
The MCP tools in mcp_server/tools.py call the same service layer.

Routes:
    POST   /api/v1/jobs                          — Post a job (requester)
    GET    /api/v1/jobs                          — Role-scoped job listing
    GET    /api/v1/jobs/{id}                     — Job details
    GET    /api/v1/jobs/{id}/activity            — Audit trail
    POST   /api/v1/jobs/{id}/approve             — Publish listing (admin)
    POST   /api/v1/jobs/{id}/reject              — Decline listing (admin)
    POST   /api/v1/jobs/{id}/fund                — Fund escrow (requester)
    POST   /api/v1/jobs/{id}/start               — Start work (fulfiller)
    POST   /api/v1/jobs/{id}/complete            — Mark work done (fulfiller)
    POST   /api/v1/jobs/{id}/release             — Release escrow (requester)
    POST   /api/v1/jobs/{id}/partial-release     — Release part of escrow (requester)
    POST   /api/v1/jobs/{id}/override            — Force release/refund (admin)
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime
from collections.abc import Callable  # noqa: TC003

from fastapi import APIRouter, Depends, Query

from service_clearinghouse.api.deps import (
    get_actor,
    get_app_settings,
    get_payment_gateway,
    get_uow_factory,
)
from service_clearinghouse.config import Settings  # noqa: TC001
from service_clearinghouse.domain.actor import Actor  # noqa: TC001
from service_clearinghouse.domain.enums import JobStatus
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.schemas.marketplace import (
    ActivityEventResponse,
    CreateJobRequest,
    EscrowOverrideRequest,
    EvidenceRequest,
    FundEscrowRequest,
    FundingResponse,
    JobListResponse,
    JobResponse,
    PartialReleaseRequest,
    RejectJobRequest,
)
from service_clearinghouse.services.escrow_service import EscrowService
from service_clearinghouse.services.job_service import MAX_PAGE_SIZE, JobService
from service_clearinghouse.services.payment_service import PaymentGateway  # noqa: TC001
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: TC001

router = APIRouter(prefix="/api/v1/jobs", tags=["Jobs"])
logger = get_logger(__name__)

UowFactory = Callable[[], UnitOfWork]


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


@router.post("", response_model=JobResponse, status_code=201, summary="Post a new job")
async def create_job(
    request: CreateJobRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> JobResponse:
    """Create a job in pending_validation; an admin must approve it."""
    async with uow_factory() as uow:
        job = await JobService(uow).create_job(
            actor,
            title=request.title,
            description=request.description,
            category=request.category,
            budget=request.budget,
            scheduled_at=request.scheduled_at,
        )
    return JobResponse.model_validate(job)


@router.get("", response_model=JobListResponse, summary="List jobs visible to the caller")
async def list_jobs(
    status: JobStatus | None = None,
    category: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> JobListResponse:
    async with uow_factory() as uow:
        jobs, total = await JobService(uow).list_jobs(actor, status, category, page, limit)
    return JobListResponse(
        items=[JobResponse.model_validate(j) for j in jobs],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{job_id}", response_model=JobResponse, summary="Get job details")
async def get_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await JobService(uow).get_job(actor, job_id)
    return JobResponse.model_validate(job)


@router.get(
    "/{job_id}/activity",
    response_model=list[ActivityEventResponse],
    summary="Get the job's audit trail",
)
async def get_job_activity(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> list[ActivityEventResponse]:
    async with uow_factory() as uow:
        events = await JobService(uow).get_activity(actor, job_id)
    return [ActivityEventResponse.model_validate(e) for e in events]


@router.post("/{job_id}/approve", response_model=JobResponse, summary="Approve a listing")
async def approve_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await JobService(uow).approve_job(actor, job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/reject", response_model=JobResponse, summary="Reject a listing")
async def reject_job(
    job_id: uuid.UUID,
    request: RejectJobRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await JobService(uow).reject_job(actor, job_id, request.reason)
    return JobResponse.model_validate(job)


# ---------------------------------------------------------------------------
# Escrow & work
# ---------------------------------------------------------------------------


@router.post("/{job_id}/fund", response_model=FundingResponse, summary="Fund the job's escrow")
async def fund_escrow(
    job_id: uuid.UUID,
    request: FundEscrowRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
) -> FundingResponse:
    """Fund immediately, or return a hosted checkout to redirect the requester to."""
    async with uow_factory() as uow:
        result = await EscrowService(uow, gateway, settings).fund_escrow(
            actor, job_id, request.amount
        )
    return FundingResponse.model_validate(result)


@router.post("/{job_id}/start", response_model=JobResponse, summary="Start work")
async def start_job(
    job_id: uuid.UUID,
    request: EvidenceRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await EscrowService(uow, settings=settings).start_job(
            actor, job_id, request.evidence
        )
    return JobResponse.model_validate(job)


@router.post("/{job_id}/complete", response_model=JobResponse, summary="Mark work as completed")
async def complete_job(
    job_id: uuid.UUID,
    request: EvidenceRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await EscrowService(uow, settings=settings).mark_complete(
            actor, job_id, request.evidence
        )
    return JobResponse.model_validate(job)


@router.post("/{job_id}/release", response_model=JobResponse, summary="Release escrow")
async def release_escrow(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await EscrowService(uow, settings=settings).release_escrow(actor, job_id)
    return JobResponse.model_validate(job)


@router.post(
    "/{job_id}/partial-release",
    response_model=JobResponse,
    summary="Release part of the escrow",
)
async def partial_release(
    job_id: uuid.UUID,
    request: PartialReleaseRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await EscrowService(uow, settings=settings).partial_release(
            actor, job_id, request.amount
        )
    return JobResponse.model_validate(job)


@router.post("/{job_id}/override", response_model=JobResponse, summary="Admin escrow override")
async def override_escrow(
    job_id: uuid.UUID,
    request: EscrowOverrideRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> JobResponse:
    async with uow_factory() as uow:
        job = await EscrowService(uow, settings=settings).admin_override_escrow(
            actor, job_id, request.action, request.reason
        )
    return JobResponse.model_validate(job)
