"""Settlement and payout REST API routes.

Routes:
    GET    /api/v1/transactions            — Settlements visible to the caller
    GET    /api/v1/earnings                — Fulfiller earnings summary
    POST   /api/v1/payouts                 — Request a payout (fulfiller)
    GET    /api/v1/payouts                 — Payouts (+ balance for fulfillers)
    PATCH  /api/v1/payouts/{id}            — Update payout status (admin)
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime
from collections.abc import Callable  # noqa: TC003

from fastapi import APIRouter, Depends, Query

from service_clearinghouse.api.deps import get_actor, get_app_settings, get_uow_factory
from service_clearinghouse.config import Settings  # noqa: TC001
from service_clearinghouse.domain.actor import Actor  # noqa: TC001
from service_clearinghouse.domain.enums import PayoutStatus, TransactionStatus
from service_clearinghouse.schemas.ledger import (
    EarningsResponse,
    PayoutListResponse,
    PayoutRequestBody,
    PayoutResponse,
    TransactionListResponse,
    TransactionResponse,
    UpdatePayoutRequest,
)
from service_clearinghouse.services.job_service import MAX_PAGE_SIZE
from service_clearinghouse.services.payout_service import PayoutService
from service_clearinghouse.services.settlement_service import SettlementLedger
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: TC001

router = APIRouter(prefix="/api/v1", tags=["Ledger"])

UowFactory = Callable[[], UnitOfWork]


# ---------------------------------------------------------------------------
# Settlements
# ---------------------------------------------------------------------------


@router.get("/transactions", response_model=TransactionListResponse, summary="List settlements")
async def list_transactions(
    status: TransactionStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> TransactionListResponse:
    async with uow_factory() as uow:
        ledger = SettlementLedger(uow.session, settings.commission_rate)
        txns, total = await ledger.list_for_actor(actor, status, page, limit)
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in txns],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/earnings", response_model=EarningsResponse, summary="Fulfiller earnings")
async def get_earnings(
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> EarningsResponse:
    async with uow_factory() as uow:
        summary = await SettlementLedger(uow.session, settings.commission_rate).earnings(actor)
    return EarningsResponse.model_validate(summary)


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------


@router.post(
    "/payouts",
    response_model=PayoutResponse,
    status_code=201,
    summary="Request a payout",
)
async def request_payout(
    request: PayoutRequestBody,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> PayoutResponse:
    async with uow_factory() as uow:
        payout = await PayoutService(uow).request_payout(
            actor,
            request.amount,
            request.bank_name,
            request.account_number,
            request.account_name,
        )
    return PayoutResponse.model_validate(payout)


@router.get("/payouts", response_model=PayoutListResponse, summary="List payouts")
async def list_payouts(
    status: PayoutStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> PayoutListResponse:
    async with uow_factory() as uow:
        payouts, total, balance = await PayoutService(uow).list_payouts(
            actor, status, page, limit
        )
    return PayoutListResponse(
        items=[PayoutResponse.model_validate(p) for p in payouts],
        total=total,
        page=page,
        limit=limit,
        available_balance=balance,
    )


@router.patch("/payouts/{payout_id}", response_model=PayoutResponse, summary="Update a payout")
async def update_payout(
    payout_id: uuid.UUID,
    request: UpdatePayoutRequest,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
) -> PayoutResponse:
    async with uow_factory() as uow:
        payout = await PayoutService(uow).update_payout_status(
            actor, payout_id, request.status, request.notes
        )
    return PayoutResponse.model_validate(payout)
