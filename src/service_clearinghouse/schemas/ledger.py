"""Pydantic schemas for settlements, payouts and operational endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from service_clearinghouse.domain.enums import PayoutStatus

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class PayoutRequestBody(BaseModel):
    """Request body for a fulfiller withdrawing earnings."""

    amount: Decimal = Field(..., gt=0, decimal_places=2)
    bank_name: str = Field(..., min_length=1, max_length=120, examples=["BDO"])
    account_number: str = Field(..., min_length=1, max_length=64)
    account_name: str = Field(..., min_length=1, max_length=120)


class UpdatePayoutRequest(BaseModel):
    status: PayoutStatus
    notes: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    payer_id: str
    payee_id: str
    gross_amount: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    status: str
    created_at: datetime


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    limit: int


class EarningsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    fulfiller_id: str
    gross: Decimal
    commission: Decimal
    net: Decimal


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    fulfiller_id: str
    amount: Decimal
    bank_name: str
    account_number: str
    account_name: str
    status: str
    notes: str | None
    processed_at: datetime | None
    created_at: datetime


class PayoutListResponse(BaseModel):
    items: list[PayoutResponse]
    total: int
    page: int
    limit: int
    available_balance: Decimal | None = Field(
        default=None, description="Present for fulfillers only"
    )


class SweepResponse(BaseModel):
    expired_jobs: int
    expired_quotes: int
    auto_released: int
    expired_payouts: int
    failures: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
