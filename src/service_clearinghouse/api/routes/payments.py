"""Payment gateway routes: webhook delivery and checkout polling.

Routes:
    POST   /api/v1/payments/webhook                  — Gateway webhook (signed)
    POST   /api/v1/payments/{session_ref}/refresh    — Poll a checkout (requester)

The webhook answers 401 for a bad signature, 200 for events it processed
or deliberately ignored, and 500 (via WebhookProcessingError) when the
gateway should redeliver.
"""

from __future__ import annotations

from collections.abc import Callable  # noqa: TC003

from fastapi import APIRouter, Depends, Header, Request

from service_clearinghouse.api.deps import (
    get_actor,
    get_app_settings,
    get_payment_gateway,
    get_uow_factory,
)
from service_clearinghouse.config import Settings  # noqa: TC001
from service_clearinghouse.domain.actor import Actor  # noqa: TC001
from service_clearinghouse.schemas.marketplace import PaymentStatusResponse
from service_clearinghouse.services.escrow_service import EscrowService
from service_clearinghouse.services.payment_service import (
    PaymentGateway,  # noqa: TC001
    PaymentWebhookHandler,
)
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: TC001

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])

UowFactory = Callable[[], UnitOfWork]


@router.post("/webhook", summary="Payment gateway webhook")
async def payment_webhook(
    request: Request,
    paymongo_signature: str = Header(default=""),
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    payload = await request.body()
    handler = PaymentWebhookHandler(gateway, uow_factory, settings)
    return await handler.handle(payload, paymongo_signature)


@router.post(
    "/{session_ref}/refresh",
    response_model=PaymentStatusResponse,
    summary="Poll a checkout session and confirm funding if paid",
)
async def refresh_payment(
    session_ref: str,
    actor: Actor = Depends(get_actor),
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
    settings: Settings = Depends(get_app_settings),
) -> PaymentStatusResponse:
    async with uow_factory() as uow:
        funded = await EscrowService(uow, gateway, settings).refresh_payment_status(
            actor, session_ref
        )
    return PaymentStatusResponse(session_ref=session_ref, funded=funded)
