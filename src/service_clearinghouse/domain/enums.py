"""Domain enumerations for the Service Clearinghouse.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class Role(enum.StrEnum):
    """Roles asserted by the identity provider."""

    REQUESTER = "requester"
    FULFILLER = "fulfiller"
    ADMIN = "admin"


class JobStatus(enum.StrEnum):
    """Lifecycle states of a job.

    Transitions are enforced by JobStateMachine (domain/state_machine.py).
    """

    PENDING_VALIDATION = "pending_validation"
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    EXPIRED = "expired"


# A fulfiller must be attached to the job in every one of these states.
STAFFED_JOB_STATUSES = frozenset(
    {JobStatus.ASSIGNED, JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.DISPUTED}
)


class EscrowStatus(enum.StrEnum):
    """Where the job's money is. Guarded by EscrowStateMachine."""

    NOT_FUNDED = "not_funded"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


class QuoteStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class TransactionStatus(enum.StrEnum):
    """Settlement transaction states. Records are never deleted."""

    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class EscrowAction(enum.StrEnum):
    """What an admin does with held funds on override or dispute resolution."""

    RELEASE = "release"
    REFUND = "refund"


class PayoutStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class PaymentStatus(enum.StrEnum):
    """State of a hosted gateway checkout attempt."""

    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"


class ActivityType(enum.StrEnum):
    """Types of audit events recorded in the activity_events table.

    Every state-changing operation records exactly one event.
    """

    # Job intake
    JOB_CREATED = "job_created"
    JOB_APPROVED = "job_approved"
    JOB_REJECTED = "job_rejected"
    JOB_EXPIRED = "job_expired"

    # Quotes
    QUOTE_SUBMITTED = "quote_submitted"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    QUOTES_EXPIRED = "quotes_expired"

    # Escrow & work
    ESCROW_CHECKOUT_STARTED = "escrow_checkout_started"
    ESCROW_FUNDED = "escrow_funded"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_PARTIALLY_RELEASED = "escrow_partially_released"
    ESCROW_AUTO_RELEASED = "escrow_auto_released"
    ESCROW_OVERRIDDEN = "escrow_overridden"

    # Disputes
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_UPDATED = "dispute_updated"
    DISPUTE_RESOLVED = "dispute_resolved"

    # Payouts
    PAYOUT_REQUESTED = "payout_requested"
    PAYOUT_UPDATED = "payout_updated"
    PAYOUT_EXPIRED = "payout_expired"

    # Reviews
    REVIEW_SUBMITTED = "review_submitted"


class NotificationType(enum.StrEnum):
    """User-facing notification kinds carried on fan-out events."""

    JOB_APPROVED = "job_approved"
    JOB_REJECTED = "job_rejected"
    JOB_EXPIRED = "job_expired"
    QUOTE_RECEIVED = "quote_received"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    QUOTE_EXPIRED = "quote_expired"
    ESCROW_FUNDED = "escrow_funded"
    PAYMENT_CONFIRMED = "payment_confirmed"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_UPDATED = "dispute_updated"
    DISPUTE_RESOLVED = "dispute_resolved"
    PAYOUT_REQUESTED = "payout_requested"
    PAYOUT_STATUS_UPDATE = "payout_status_update"
    REVIEW_RECEIVED = "review_received"
