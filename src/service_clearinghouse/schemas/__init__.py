"""Pydantic API schemas."""

from service_clearinghouse.schemas.ledger import (
    EarningsResponse,
    HealthResponse,
    PayoutListResponse,
    PayoutRequestBody,
    PayoutResponse,
    SweepResponse,
    TransactionListResponse,
    TransactionResponse,
    UpdatePayoutRequest,
)
from service_clearinghouse.schemas.marketplace import (
    AcceptQuoteResponse,
    ActivityEventResponse,
    CreateJobRequest,
    DisputeListResponse,
    DisputeResponse,
    EscrowOverrideRequest,
    EvidenceRequest,
    FulfillerProfileResponse,
    FundEscrowRequest,
    FundingResponse,
    JobListResponse,
    JobResponse,
    OpenDisputeRequest,
    PartialReleaseRequest,
    PaymentStatusResponse,
    QuoteResponse,
    RatingBreakdown,
    RejectJobRequest,
    ResolveDisputeRequest,
    ReviewListResponse,
    ReviewResponse,
    SubmitQuoteRequest,
    SubmitReviewRequest,
)

__all__ = [
    "AcceptQuoteResponse",
    "ActivityEventResponse",
    "CreateJobRequest",
    "DisputeListResponse",
    "DisputeResponse",
    "EarningsResponse",
    "EscrowOverrideRequest",
    "EvidenceRequest",
    "FulfillerProfileResponse",
    "FundEscrowRequest",
    "FundingResponse",
    "HealthResponse",
    "JobListResponse",
    "JobResponse",
    "OpenDisputeRequest",
    "PartialReleaseRequest",
    "PaymentStatusResponse",
    "PayoutListResponse",
    "PayoutRequestBody",
    "PayoutResponse",
    "QuoteResponse",
    "RatingBreakdown",
    "RejectJobRequest",
    "ResolveDisputeRequest",
    "ReviewListResponse",
    "ReviewResponse",
    "SubmitQuoteRequest",
    "SubmitReviewRequest",
    "SweepResponse",
    "TransactionListResponse",
    "TransactionResponse",
    "UpdatePayoutRequest",
]
