"""Dispute REST API routes.

Routes:
    POST   /api/v1/jobs/{job_id}/disputes     — Open a dispute (job participant)
    GET    /api/v1/disputes                   — Disputes visible to the caller
    GET    /api/v1/disputes/{id}              — Dispute details
    POST   /api/v1/disputes/{id}/resolve      — Investigate or resolve (admin)
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
from service_clearinghouse.domain.enums import DisputeStatus
from service_clearinghouse.schemas.marketplace import (
    DisputeListResponse,
    DisputeResponse,
    OpenDisputeRequest,
    ResolveDisputeRequest,
)
from service_clearinghouse.services.dispute_service import DisputeService
from service_clearinghouse.services.job_service import MAX_PAGE_SIZE
from service_clearinghouse.services.payment_service import PaymentGateway  # noqa: TC001
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: TC001

router = APIRouter(prefix="/api/v1", tags=["Disputes"])

UowFactory = Callable[[], UnitOfWork]


@router.post(
    "/jobs/{job_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    summary="Open a dispute on a job",
)
async def open_dispute(
    job_id: uuid.UUID,
    request: OpenDisputeRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> DisputeResponse:
    async with uow_factory() as uow:
        dispute = await DisputeService(uow).open_dispute(
            actor, job_id, request.reason, request.evidence
        )
    return DisputeResponse.model_validate(dispute)


@router.get("/disputes", response_model=DisputeListResponse, summary="List disputes")
async def list_disputes(
    status: DisputeStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> DisputeListResponse:
    async with uow_factory() as uow:
        disputes, total = await DisputeService(uow).list_disputes(actor, status, page, limit)
    return DisputeListResponse(
        items=[DisputeResponse.model_validate(d) for d in disputes],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/disputes/{dispute_id}", response_model=DisputeResponse, summary="Get a dispute")
async def get_dispute(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> DisputeResponse:
    async with uow_factory() as uow:
        dispute = await DisputeService(uow).get_dispute(actor, dispute_id)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/disputes/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Investigate or resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
    settings: Settings = Depends(get_app_settings),
) -> DisputeResponse:
    """``resolved`` requires an escrow action: release to the fulfiller or refund."""
    async with uow_factory() as uow:
        dispute = await DisputeService(uow, gateway, settings).resolve_dispute(
            actor,
            dispute_id,
            request.status,
            notes=request.resolution_notes,
            escrow_action=request.escrow_action,
        )
    return DisputeResponse.model_validate(dispute)
