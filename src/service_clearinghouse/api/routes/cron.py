"""Scheduler endpoints, guarded by the X-Cron-Secret header.

Routes:
    POST   /api/v1/cron/sweep             — Run every sweep
    POST   /api/v1/cron/expire-payouts    — Expire stale pending payouts only
"""

from __future__ import annotations

from collections.abc import Callable  # noqa: TC003

from fastapi import APIRouter, Depends

from service_clearinghouse.api.deps import get_app_settings, get_uow_factory, require_cron_secret
from service_clearinghouse.config import Settings  # noqa: TC001
from service_clearinghouse.schemas.ledger import SweepResponse
from service_clearinghouse.services.sweep_service import SweepReport, SweepService
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: TC001

router = APIRouter(
    prefix="/api/v1/cron",
    tags=["Cron"],
    dependencies=[Depends(require_cron_secret)],
)

UowFactory = Callable[[], UnitOfWork]


@router.post("/sweep", response_model=SweepResponse, summary="Run scheduled sweeps")
async def run_sweeps(
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> SweepResponse:
    report = await SweepService(uow_factory, settings).run_all()
    return SweepResponse(**report.as_dict())


@router.post(
    "/expire-payouts",
    response_model=SweepResponse,
    summary="Expire stale pending payouts",
)
async def expire_payouts(
    uow_factory: UowFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_app_settings),
) -> SweepResponse:
    report = SweepReport()
    report.expired_payouts = await SweepService(
        uow_factory, settings
    ).expire_stale_pending_payouts(report)
    return SweepResponse(**report.as_dict())
