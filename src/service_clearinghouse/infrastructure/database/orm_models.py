"""SQLAlchemy 2.0 ORM models for the Service Clearinghouse.

Tables:
    1. jobs                     — service jobs with their job and escrow status.
    2. quotes                   — fulfiller bids on open jobs.
    3. settlement_transactions  — money moved (or held) per job, append-then-update.
    4. disputes                 — disagreements raised on active jobs.
    5. payout_requests          — fulfiller withdrawals against their balance.
    6. escrow_payments          — hosted gateway checkout attempts.
    7. activity_events          — append-only audit log of every state change.
    8. fulfiller_profiles       — completion and rating metrics.
    9. reviews                  — requester ratings of released jobs.

Design decisions:
    - UUIDs as primary keys; participant ids are the identity provider's
      opaque subject strings.
    - Numeric(12, 2) for money (no floating point rounding errors).
    - JSON columns (JSONB on PostgreSQL) for evidence URLs and event metadata.
    - CHECK constraints mirror the enums and the money identities so invalid
      rows are rejected at the DB level as well.
    - Unique (job_id, fulfiller_id) on quotes and a partial unique index that
      allows a single accepted quote per job.
    - Unique (job_id, requester_id) on reviews: one review per job.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. jobs
# ---------------------------------------------------------------------------
class Job(Base):
    """A paid service job posted by a requester."""

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fulfiller_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Set when a quote is accepted",
    )

    # --- Listing ---
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(80), nullable=False)
    budget: Mapped[Decimal] = mapped_column(Money, nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Status (guarded by JobStateMachine / EscrowStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending_validation"
    )
    escrow_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="not_funded"
    )

    # --- Escrow amounts ---
    escrow_amount: Mapped[Decimal | None] = mapped_column(
        Money, nullable=True, default=None, comment="Amount actually funded"
    )
    released_amount: Mapped[Decimal | None] = mapped_column(
        Money, nullable=True, default=None, comment="Amount paid out on release"
    )

    # --- Evidence (opaque storage URLs, at most 3 each) ---
    before_evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    after_evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_validation', 'open', 'assigned', 'in_progress', "
            "'completed', 'disputed', 'rejected', 'refunded', 'expired')",
            name="ck_job_valid_status",
        ),
        CheckConstraint(
            "escrow_status IN ('not_funded', 'funded', 'released', 'refunded')",
            name="ck_job_valid_escrow_status",
        ),
        CheckConstraint(
            "fulfiller_id IS NOT NULL OR status NOT IN "
            "('assigned', 'in_progress', 'completed', 'disputed')",
            name="ck_job_staffed_has_fulfiller",
        ),
        CheckConstraint("budget > 0", name="ck_job_positive_budget"),
        CheckConstraint("risk_score BETWEEN 0 AND 100", name="ck_job_risk_bounds"),
        Index("idx_job_status_created", "status", "created_at"),
        Index("idx_job_requester_status", "requester_id", "status"),
        Index("idx_job_fulfiller_status", "fulfiller_id", "status"),
        Index("idx_job_category_status", "category", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Job id={self.id} status={self.status} "
            f"escrow={self.escrow_status} budget={self.budget}>"
        )


# ---------------------------------------------------------------------------
# 2. quotes
# ---------------------------------------------------------------------------
class Quote(Base):
    """A fulfiller's bid on an open job."""

    __tablename__ = "quotes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    fulfiller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    timeline: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')", name="ck_quote_valid_status"
        ),
        CheckConstraint("amount > 0", name="ck_quote_positive_amount"),
        UniqueConstraint("job_id", "fulfiller_id", name="uq_quote_job_fulfiller"),
        Index(
            "uq_quote_one_accepted_per_job",
            "job_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
        Index("idx_quote_job_status", "job_id", "status"),
        Index("idx_quote_fulfiller_status", "fulfiller_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Quote id={self.id} job={self.job_id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 3. settlement_transactions
# ---------------------------------------------------------------------------
class SettlementTransaction(Base):
    """Money held for or paid to a fulfiller on a job.

    Amounts are written once on insert; only ``status`` changes afterwards.
    Rows are never deleted.
    """

    __tablename__ = "settlement_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False
    )
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False)

    gross_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'refunded')", name="ck_txn_valid_status"
        ),
        CheckConstraint(
            "ABS(commission_amount + net_amount - gross_amount) < 0.005",
            name="ck_txn_amounts_balance",
        ),
        CheckConstraint("gross_amount > 0", name="ck_txn_positive_gross"),
        Index("idx_txn_job_status", "job_id", "status"),
        Index("idx_txn_payee_status", "payee_id", "status"),
        Index("idx_txn_payer_status", "payer_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SettlementTransaction id={self.id} job={self.job_id} "
            f"status={self.status} gross={self.gross_amount}>"
        )


# ---------------------------------------------------------------------------
# 4. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    """A disagreement raised by a job participant, resolved by an admin."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    raised_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")

    # --- Resolution ---
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    escrow_action: Mapped[str | None] = mapped_column(String(20), nullable=True, default=None)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'investigating', 'resolved')", name="ck_dispute_valid_status"
        ),
        CheckConstraint(
            "escrow_action IS NULL OR escrow_action IN ('release', 'refund')",
            name="ck_dispute_valid_action",
        ),
        Index("idx_dispute_status_created", "status", "created_at"),
        Index("idx_dispute_raised_by_status", "raised_by", "status"),
        Index("idx_dispute_job", "job_id"),
    )

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} job={self.job_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. payout_requests
# ---------------------------------------------------------------------------
class PayoutRequest(Base):
    """A fulfiller's request to withdraw part of their available balance."""

    __tablename__ = "payout_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    fulfiller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # --- Destination ---
    bank_name: Mapped[str] = mapped_column(String(120), nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    account_name: Mapped[str] = mapped_column(String(120), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'rejected')",
            name="ck_payout_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_payout_positive_amount"),
        Index("idx_payout_fulfiller_status", "fulfiller_id", "status"),
        Index("idx_payout_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PayoutRequest id={self.id} fulfiller={self.fulfiller_id} "
            f"status={self.status} amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# 6. escrow_payments
# ---------------------------------------------------------------------------
class EscrowPayment(Base):
    """A hosted checkout session opened with the payment gateway."""

    __tablename__ = "escrow_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fulfiller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    session_ref: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="awaiting_payment"
    )
    payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, default=None)
    payment_method: Mapped[str | None] = mapped_column(String(40), nullable=True, default=None)
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('awaiting_payment', 'paid')", name="ck_payment_valid_status"
        ),
        Index("idx_payment_job", "job_id"),
    )

    def __repr__(self) -> str:
        return f"<EscrowPayment session={self.session_ref} job={self.job_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 7. activity_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class ActivityEvent(Base):
    """Immutable audit record of a state-changing operation.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "activity_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="system",
        comment="Subject id that triggered the event, or 'system' for sweeps",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_activity_job", "job_id"),
        Index("idx_activity_type", "event_type"),
        Index("idx_activity_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityEvent id={self.id} type={self.event_type} actor={self.actor}>"


# ---------------------------------------------------------------------------
# 8. fulfiller_profiles
# ---------------------------------------------------------------------------
class FulfillerProfile(Base):
    """Reputation metrics shown to requesters comparing quotes."""

    __tablename__ = "fulfiller_profiles"

    fulfiller_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_rate: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    avg_rating: Mapped[Decimal] = mapped_column(Numeric(2, 1), nullable=False, default=0)
    review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "completion_rate BETWEEN 0 AND 100", name="ck_profile_rate_bounds"
        ),
        CheckConstraint("avg_rating BETWEEN 0 AND 5", name="ck_profile_rating_bounds"),
    )


# ---------------------------------------------------------------------------
# 9. reviews
# ---------------------------------------------------------------------------
class Review(Base):
    """A requester's rating of the fulfiller on a released job.

    Written once; there is no edit or delete.
    """

    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fulfiller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    feedback: Mapped[str] = mapped_column(Text, nullable=False)
    breakdown: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="Optional 1-5 scores: quality, professionalism, punctuality, communication",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating_bounds"),
        UniqueConstraint("job_id", "requester_id", name="uq_review_job_requester"),
        Index("idx_review_fulfiller_created", "fulfiller_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Review id={self.id} job={self.job_id} rating={self.rating}>"


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (Job, Quote, SettlementTransaction, Dispute, PayoutRequest, FulfillerProfile):
    event.listen(_model, "before_update", _set_updated_at)
