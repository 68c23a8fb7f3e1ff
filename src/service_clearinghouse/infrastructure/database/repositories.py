"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the UnitOfWork's responsibility).

Status flips go through ``compare_and_set``: an ``UPDATE ... WHERE status =
:expected`` whose affected-row count tells the caller whether it won. A
concurrent writer that already moved the row sees ``False`` and must fail
the operation instead of overwriting.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite

from service_clearinghouse.domain.commission import to_money
from service_clearinghouse.domain.enums import (
    PaymentStatus,
    PayoutStatus,
    QuoteStatus,
    TransactionStatus,
)
from service_clearinghouse.infrastructure.database.orm_models import (
    ActivityEvent,
    Base,
    Dispute,
    EscrowPayment,
    FulfillerProfile,
    Job,
    PayoutRequest,
    Quote,
    Review,
    SettlementTransaction,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable, Mapping, Sequence

    from sqlalchemy import ColumnElement, Select
    from sqlalchemy.ext.asyncio import AsyncSession

    from service_clearinghouse.domain.enums import ActivityType

ModelT = TypeVar("ModelT", bound=Base)


class _Repository:
    """Shared helpers: insert, locked reads, compare-and-set, pagination."""

    model: type[Base]

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _add(self, obj: ModelT) -> ModelT:
        self._session.add(obj)
        await self._session.flush()
        return obj

    async def _get(self, obj_id: Any, *, for_update: bool = False) -> Any:
        """Fetch by primary key.

        ``for_update`` takes a row lock (PostgreSQL) and overwrites any stale
        copy held in the session, so reads made after acquiring the job lock
        see the committed state.
        """
        stmt = select(self.model).where(self.model.id == obj_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        obj: Base,
        expected: Mapping[str, str],
        **values: Any,
    ) -> bool:
        """Update ``obj`` only if its current columns match ``expected``.

        Returns False (and changes nothing) when another writer got there first.
        """
        model = type(obj)
        stmt = update(model).where(model.id == obj.id)
        for column, value in expected.items():
            stmt = stmt.where(getattr(model, column) == str(value))
        if hasattr(model, "updated_at"):
            values.setdefault("updated_at", datetime.now(UTC))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self._session.refresh(obj)
        return True

    async def _page(
        self,
        stmt: Select,
        order_by: Any,
        page: int,
        limit: int,
    ) -> tuple[list[Any], int]:
        total = await self._session.scalar(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        )
        result = await self._session.execute(
            stmt.order_by(order_by).offset((page - 1) * limit).limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------
class JobRepository(_Repository):
    """Data access for jobs."""

    model = Job

    async def create(self, job: Job) -> Job:
        return await self._add(job)

    async def get_by_id(self, job_id: uuid.UUID, *, for_update: bool = False) -> Job | None:
        return await self._get(job_id, for_update=for_update)

    async def search(
        self,
        clauses: Sequence[ColumnElement[bool]],
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Job], int]:
        """Filtered, newest-first page of jobs plus the total match count."""
        stmt = select(Job).where(*clauses)
        return await self._page(stmt, Job.created_at.desc(), page, limit)

    async def find_ids(
        self,
        status: str,
        updated_before: datetime | None = None,
        created_before: datetime | None = None,
        escrow_status: str | None = None,
    ) -> list[uuid.UUID]:
        """Ids of jobs in ``status`` untouched since a cutoff (for sweeps)."""
        stmt = select(Job.id).where(Job.status == str(status))
        if escrow_status is not None:
            stmt = stmt.where(Job.escrow_status == str(escrow_status))
        if updated_before is not None:
            stmt = stmt.where(Job.updated_at < updated_before)
        if created_before is not None:
            stmt = stmt.where(Job.created_at < created_before)
        result = await self._session.execute(stmt.order_by(Job.created_at.asc()))
        return list(result.scalars().all())

    async def count_for_fulfiller(self, fulfiller_id: str, statuses: Iterable[str]) -> int:
        result = await self._session.scalar(
            select(func.count(Job.id)).where(
                Job.fulfiller_id == fulfiller_id,
                Job.status.in_([str(s) for s in statuses]),
            )
        )
        return int(result or 0)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------
class QuoteRepository(_Repository):
    """Data access for quotes."""

    model = Quote

    async def create(self, quote: Quote) -> Quote:
        """Insert a quote. Raises IntegrityError on a duplicate (job, fulfiller)."""
        return await self._add(quote)

    async def get_by_id(self, quote_id: uuid.UUID, *, for_update: bool = False) -> Quote | None:
        return await self._get(quote_id, for_update=for_update)

    async def get_for_job_and_fulfiller(
        self, job_id: uuid.UUID, fulfiller_id: str
    ) -> Quote | None:
        result = await self._session.execute(
            select(Quote).where(Quote.job_id == job_id, Quote.fulfiller_id == fulfiller_id)
        )
        return result.scalar_one_or_none()

    async def get_accepted_for_job(self, job_id: uuid.UUID) -> Quote | None:
        result = await self._session.execute(
            select(Quote).where(
                Quote.job_id == job_id, Quote.status == QuoteStatus.ACCEPTED.value
            )
        )
        return result.scalar_one_or_none()

    async def list_for_job(
        self, job_id: uuid.UUID, fulfiller_id: str | None = None
    ) -> list[Quote]:
        stmt = select(Quote).where(Quote.job_id == job_id)
        if fulfiller_id is not None:
            stmt = stmt.where(Quote.fulfiller_id == fulfiller_id)
        result = await self._session.execute(stmt.order_by(Quote.created_at.asc()))
        return list(result.scalars().all())

    async def reject_pending_for_job(
        self, job_id: uuid.UUID, exclude_id: uuid.UUID | None = None
    ) -> list[Quote]:
        """Reject every pending quote on a job (except ``exclude_id``) and return them."""
        stmt = select(Quote.id).where(
            Quote.job_id == job_id, Quote.status == QuoteStatus.PENDING.value
        )
        if exclude_id is not None:
            stmt = stmt.where(Quote.id != exclude_id)
        ids = list((await self._session.execute(stmt)).scalars().all())
        if not ids:
            return []

        await self._session.execute(
            update(Quote)
            .where(Quote.id.in_(ids), Quote.status == QuoteStatus.PENDING.value)
            .values(status=QuoteStatus.REJECTED.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(
            select(Quote)
            .where(Quote.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_stale_pending(self, created_before: datetime) -> list[Quote]:
        result = await self._session.execute(
            select(Quote)
            .where(
                Quote.status == QuoteStatus.PENDING.value,
                Quote.created_at < created_before,
            )
            .order_by(Quote.created_at.asc())
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Settlement transactions
# ---------------------------------------------------------------------------
class SettlementRepository(_Repository):
    """Append-then-update store of settlement transactions. Never deletes."""

    model = SettlementTransaction

    async def append(self, txn: SettlementTransaction) -> SettlementTransaction:
        return await self._add(txn)

    async def list_for_job(
        self,
        job_id: uuid.UUID,
        statuses: Iterable[TransactionStatus] | None = None,
    ) -> list[SettlementTransaction]:
        stmt = select(SettlementTransaction).where(SettlementTransaction.job_id == job_id)
        if statuses is not None:
            stmt = stmt.where(SettlementTransaction.status.in_([s.value for s in statuses]))
        result = await self._session.execute(
            stmt.order_by(SettlementTransaction.created_at.asc()).execution_options(
                populate_existing=True
            )
        )
        return list(result.scalars().all())

    async def set_status_for_job(
        self,
        job_id: uuid.UUID,
        from_statuses: Iterable[TransactionStatus],
        to_status: TransactionStatus,
    ) -> int:
        """Flip every matching transaction of a job. Returns the affected count."""
        result = await self._session.execute(
            update(SettlementTransaction)
            .where(
                SettlementTransaction.job_id == job_id,
                SettlementTransaction.status.in_([s.value for s in from_statuses]),
            )
            .values(status=to_status.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def search(
        self,
        clauses: Sequence[ColumnElement[bool]],
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[SettlementTransaction], int]:
        stmt = select(SettlementTransaction).where(*clauses)
        return await self._page(stmt, SettlementTransaction.created_at.desc(), page, limit)

    async def completed_totals_for_payee(self, payee_id: str) -> tuple[Decimal, Decimal, Decimal]:
        """(gross, commission, net) summed over the payee's completed transactions."""
        row = (
            await self._session.execute(
                select(
                    func.coalesce(func.sum(SettlementTransaction.gross_amount), 0),
                    func.coalesce(func.sum(SettlementTransaction.commission_amount), 0),
                    func.coalesce(func.sum(SettlementTransaction.net_amount), 0),
                ).where(
                    SettlementTransaction.payee_id == payee_id,
                    SettlementTransaction.status == TransactionStatus.COMPLETED.value,
                )
            )
        ).one()
        return to_money(row[0]), to_money(row[1]), to_money(row[2])


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------
class DisputeRepository(_Repository):
    """Data access for disputes."""

    model = Dispute

    async def create(self, dispute: Dispute) -> Dispute:
        return await self._add(dispute)

    async def get_by_id(
        self, dispute_id: uuid.UUID, *, for_update: bool = False
    ) -> Dispute | None:
        return await self._get(dispute_id, for_update=for_update)

    async def search(
        self,
        clauses: Sequence[ColumnElement[bool]],
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Dispute], int]:
        stmt = select(Dispute).where(*clauses)
        return await self._page(stmt, Dispute.created_at.desc(), page, limit)


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------
class PayoutRepository(_Repository):
    """Data access for payout requests."""

    model = PayoutRequest

    async def create(self, payout: PayoutRequest) -> PayoutRequest:
        return await self._add(payout)

    async def get_by_id(
        self, payout_id: uuid.UUID, *, for_update: bool = False
    ) -> PayoutRequest | None:
        return await self._get(payout_id, for_update=for_update)

    async def reserved_for_fulfiller(self, fulfiller_id: str) -> Decimal:
        """Sum of every payout that has not been rejected."""
        total = await self._session.scalar(
            select(func.coalesce(func.sum(PayoutRequest.amount), 0)).where(
                PayoutRequest.fulfiller_id == fulfiller_id,
                PayoutRequest.status != PayoutStatus.REJECTED.value,
            )
        )
        return to_money(total or 0)

    async def search(
        self,
        clauses: Sequence[ColumnElement[bool]],
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PayoutRequest], int]:
        stmt = select(PayoutRequest).where(*clauses)
        return await self._page(stmt, PayoutRequest.created_at.desc(), page, limit)

    async def find_stale_pending(self, created_before: datetime) -> list[PayoutRequest]:
        result = await self._session.execute(
            select(PayoutRequest)
            .where(
                PayoutRequest.status == PayoutStatus.PENDING.value,
                PayoutRequest.created_at < created_before,
            )
            .order_by(PayoutRequest.created_at.asc())
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Gateway checkout sessions
# ---------------------------------------------------------------------------
class PaymentRepository(_Repository):
    """Data access for hosted checkout sessions."""

    model = EscrowPayment

    async def create(self, payment: EscrowPayment) -> EscrowPayment:
        return await self._add(payment)

    async def get_by_session_ref(
        self, session_ref: str, *, for_update: bool = False
    ) -> EscrowPayment | None:
        stmt = select(EscrowPayment).where(EscrowPayment.session_ref == session_ref)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_paid(
        self, payment: EscrowPayment, payment_ref: str | None, payment_method: str | None
    ) -> bool:
        """Flip awaiting_payment -> paid. False if another confirmation won."""
        return await self.compare_and_set(
            payment,
            {"status": PaymentStatus.AWAITING_PAYMENT.value},
            status=PaymentStatus.PAID.value,
            payment_ref=payment_ref,
            payment_method=payment_method,
            paid_at=datetime.now(UTC),
        )


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------
class ReviewRepository(_Repository):
    """Data access for reviews."""

    model = Review

    async def create(self, review: Review) -> Review:
        return await self._add(review)

    async def get_for_job_and_requester(
        self, job_id: uuid.UUID, requester_id: str
    ) -> Review | None:
        result = await self._session.execute(
            select(Review).where(Review.job_id == job_id, Review.requester_id == requester_id)
        )
        return result.scalar_one_or_none()

    async def exists_for_job(self, job_id: uuid.UUID) -> bool:
        found = await self._session.scalar(
            select(Review.id).where(Review.job_id == job_id).limit(1)
        )
        return found is not None

    async def search(
        self,
        clauses: Sequence[ColumnElement[bool]],
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Review], int]:
        stmt = select(Review).where(*clauses)
        return await self._page(stmt, Review.created_at.desc(), page, limit)

    async def rating_stats_for_fulfiller(self, fulfiller_id: str) -> tuple[Decimal, int]:
        """Average rating (one decimal) and review count."""
        row = (
            await self._session.execute(
                select(func.avg(Review.rating), func.count(Review.id)).where(
                    Review.fulfiller_id == fulfiller_id
                )
            )
        ).one()
        average, count = row
        if not count:
            return Decimal("0.0"), 0
        rounded = Decimal(str(average)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        return rounded, int(count)


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------
class ActivityRepository:
    """Data access for the append-only activity log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        event_type: ActivityType,
        actor: str,
        job_id: uuid.UUID | None = None,
        metadata: dict | None = None,
    ) -> ActivityEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = ActivityEvent(
            job_id=job_id,
            event_type=event_type.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def list_for_job(self, job_id: uuid.UUID) -> list[ActivityEvent]:
        """Audit trail of a job, oldest first."""
        result = await self._session.execute(
            select(ActivityEvent)
            .where(ActivityEvent.job_id == job_id)
            .order_by(ActivityEvent.created_at.asc())
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Fulfiller profiles
# ---------------------------------------------------------------------------
class FulfillerProfileRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, fulfiller_id: str) -> FulfillerProfile | None:
        return await self._session.get(FulfillerProfile, fulfiller_id)

    async def save_metrics(
        self, fulfiller_id: str, completed_jobs: int, completion_rate: int
    ) -> FulfillerProfile:
        return await self._upsert(
            fulfiller_id, completed_jobs=completed_jobs, completion_rate=completion_rate
        )

    async def save_rating(
        self, fulfiller_id: str, avg_rating: Decimal, review_count: int
    ) -> FulfillerProfile:
        return await self._upsert(fulfiller_id, avg_rating=avg_rating, review_count=review_count)

    async def _upsert(self, fulfiller_id: str, **metrics: Any) -> FulfillerProfile:
        """Insert or overwrite the given columns in one statement.

        Releases of different jobs for the same fulfiller run under different
        job locks, so two of them may write the first profile row at once.
        Columns not named keep their value (or take their default on insert).
        """
        metrics["updated_at"] = datetime.now(UTC)
        dialect = self._session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(FulfillerProfile)
            .values(fulfiller_id=fulfiller_id, **metrics)
            .on_conflict_do_update(index_elements=[FulfillerProfile.fulfiller_id], set_=metrics)
        )
        await self._session.execute(stmt)
        result = await self._session.execute(
            select(FulfillerProfile)
            .where(FulfillerProfile.fulfiller_id == fulfiller_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
