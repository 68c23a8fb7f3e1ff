"""Pydantic schemas for jobs, quotes, escrow, disputes and reviews.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the ORM models to maintain clean
boundaries between the API and database layers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from service_clearinghouse.domain.enums import DisputeStatus, EscrowAction

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateJobRequest(BaseModel):
    """Request body for posting a new job."""

    title: str = Field(..., min_length=5, max_length=100, examples=["Fix leaking kitchen sink"])
    description: str = Field(
        ...,
        min_length=20,
        max_length=5000,
        description="What needs doing, where, and any constraints",
    )
    category: str = Field(..., min_length=1, max_length=80, examples=["plumbing"])
    budget: Decimal = Field(..., gt=0, decimal_places=2, examples=[1500])
    scheduled_at: datetime | None = Field(
        default=None, description="When the work should happen (ISO 8601)"
    )


class RejectJobRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class SubmitQuoteRequest(BaseModel):
    """Request body for a fulfiller bidding on an open job."""

    amount: Decimal = Field(..., gt=0, decimal_places=2)
    timeline: str = Field(..., min_length=1, max_length=200, examples=["2 days"])
    message: str = Field(..., min_length=20, max_length=1000)


class FundEscrowRequest(BaseModel):
    """Escrow holds the accepted quote, else the job budget; ``amount`` must match it."""

    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)


class EvidenceRequest(BaseModel):
    """Photo URLs captured before or after the work (at most 3 are kept)."""

    evidence: list[str] = Field(default_factory=list, max_length=3)


class PartialReleaseRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class EscrowOverrideRequest(BaseModel):
    """Admin forces a funded escrow to release or refund."""

    action: EscrowAction
    reason: str = Field(..., min_length=5, max_length=2000)


class OpenDisputeRequest(BaseModel):
    reason: str = Field(..., min_length=20, max_length=5000)
    evidence: list[str] = Field(default_factory=list, max_length=5)


class ResolveDisputeRequest(BaseModel):
    """Move a dispute to investigating, or resolve it with an escrow action."""

    status: DisputeStatus
    resolution_notes: str | None = Field(default=None, max_length=5000)
    escrow_action: EscrowAction | None = None


class RatingBreakdown(BaseModel):
    quality: int | None = Field(default=None, ge=1, le=5)
    professionalism: int | None = Field(default=None, ge=1, le=5)
    punctuality: int | None = Field(default=None, ge=1, le=5)
    communication: int | None = Field(default=None, ge=1, le=5)


class SubmitReviewRequest(BaseModel):
    """Requester rates the fulfiller once the escrow has been released."""

    rating: int = Field(..., ge=1, le=5)
    feedback: str = Field(..., min_length=10, max_length=500)
    breakdown: RatingBreakdown | None = None


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    requester_id: str
    fulfiller_id: str | None
    title: str
    description: str
    category: str
    budget: Decimal
    scheduled_at: datetime | None
    risk_score: int
    status: str
    escrow_status: str
    escrow_amount: Decimal | None
    released_amount: Decimal | None
    before_evidence: list[str]
    after_evidence: list[str]
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    items: list[JobResponse]
    total: int
    page: int
    limit: int


class QuoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    fulfiller_id: str
    amount: Decimal
    timeline: str
    message: str
    status: str
    created_at: datetime


class AcceptQuoteResponse(BaseModel):
    quote: QuoteResponse
    job: JobResponse


class FundingResponse(BaseModel):
    """Result of funding: funded on the spot, or a checkout to redirect to."""

    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    amount: Decimal
    simulated: bool
    session_ref: str | None = None
    redirect_url: str | None = None


class PaymentStatusResponse(BaseModel):
    session_ref: str
    funded: bool


class ActivityEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    job_id: uuid.UUID | None
    event_type: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    raised_by: str
    reason: str
    evidence: list[str]
    status: str
    resolution_notes: str | None
    escrow_action: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime


class DisputeListResponse(BaseModel):
    items: list[DisputeResponse]
    total: int
    page: int
    limit: int


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    requester_id: str
    fulfiller_id: str
    rating: int
    feedback: str
    breakdown: dict | None
    created_at: datetime


class ReviewListResponse(BaseModel):
    items: list[ReviewResponse]
    total: int
    page: int
    limit: int


class FulfillerProfileResponse(BaseModel):
    """Reputation shown to requesters comparing quotes."""

    model_config = ConfigDict(from_attributes=True)

    fulfiller_id: str
    completed_jobs: int
    completion_rate: int
    avg_rating: Decimal
    review_count: int
