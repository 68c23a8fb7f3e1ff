"""Quote Service — fulfillers bid on open jobs, requesters pick one.

Accepting a quote is the step that assigns the job, so it runs under the
job lock and writes with compare-and-set updates: of any number of
concurrent accepts on one job exactly one succeeds. The partial unique
index on accepted quotes backs this up across processes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from service_clearinghouse.domain.commission import to_money
from service_clearinghouse.domain.enums import (
    ActivityType,
    JobStatus,
    NotificationType,
    QuoteStatus,
    Role,
)
from service_clearinghouse.domain.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.domain.state_machine import check_job_transition
from service_clearinghouse.infrastructure.database.orm_models import Quote
from service_clearinghouse.infrastructure.database.repositories import (
    ActivityRepository,
    JobRepository,
    QuoteRepository,
)
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.job_service import (
    apply_job_transition,
    job_status_fields,
    load_job_for_update,
)

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.database.orm_models import Job
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

MIN_MESSAGE_LENGTH = 20
MAX_MESSAGE_LENGTH = 1000


class QuoteService:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow
        self._jobs = JobRepository(uow.session)
        self._quotes = QuoteRepository(uow.session)
        self._activity = ActivityRepository(uow.session)

    async def submit_quote(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        amount: Decimal,
        timeline: str,
        message: str,
    ) -> Quote:
        """Fulfiller bids on an open job. One quote per fulfiller per job."""
        actor.require_role(Role.FULFILLER, message="Only fulfillers can submit quotes")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        message, timeline = (message or "").strip(), (timeline or "").strip()
        if not MIN_MESSAGE_LENGTH <= len(message) <= MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be between {MIN_MESSAGE_LENGTH} and "
                f"{MAX_MESSAGE_LENGTH} characters"
            )
        if not timeline:
            raise ValidationError("Timeline is required")

        job = await load_job_for_update(self._uow, job_id)
        if job.status != JobStatus.OPEN:
            raise UnprocessableError("This job is not accepting quotes")
        if job.requester_id == actor.subject_id:
            raise ForbiddenError("You cannot quote on your own job")
        if await self._quotes.get_for_job_and_fulfiller(job.id, actor.subject_id):
            raise ConflictError("You have already submitted a quote for this job")

        quote = Quote(
            job_id=job.id,
            fulfiller_id=actor.subject_id,
            amount=to_money(amount),
            timeline=timeline,
            message=message,
            status=QuoteStatus.PENDING.value,
        )
        try:
            async with self._uow.session.begin_nested():
                await self._quotes.create(quote)
        except IntegrityError as exc:
            raise ConflictError("You have already submitted a quote for this job") from exc

        await self._activity.record(
            ActivityType.QUOTE_SUBMITTED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"quote_id": str(quote.id), "amount": str(quote.amount)},
        )
        self._uow.notifications.notify(
            job.requester_id,
            NotificationType.QUOTE_RECEIVED,
            "New quote received",
            f'You received a quote of {quote.amount} for "{job.title}".',
            entity="quote",
            entity_id=quote.id,
            job_id=str(job.id),
            status=quote.status,
        )
        logger.info(
            "quote.submitted",
            quote_id=str(quote.id),
            job_id=str(job.id),
            amount=quote.amount,
        )
        return quote

    async def accept_quote(self, actor: Actor, quote_id: uuid.UUID) -> tuple[Quote, Job]:
        """Requester accepts a pending quote: the job is assigned to its fulfiller.

        Every other pending quote on the job is rejected in the same transaction.
        """
        actor.require_role(Role.REQUESTER, message="Only requesters can accept quotes")
        quote, job = await self._load_pending(actor, quote_id)
        check_job_transition(job.status, JobStatus.ASSIGNED, job.escrow_status).raise_if_denied()

        if not await self._quotes.compare_and_set(
            quote, {"status": QuoteStatus.PENDING.value}, status=QuoteStatus.ACCEPTED.value
        ):
            raise UnprocessableError("This quote has already been processed")
        rejected = await self._quotes.reject_pending_for_job(job.id, exclude_id=quote.id)
        await apply_job_transition(
            self._jobs, job, status=JobStatus.ASSIGNED, fulfiller_id=quote.fulfiller_id
        )

        await self._activity.record(
            ActivityType.QUOTE_ACCEPTED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={
                "quote_id": str(quote.id),
                "fulfiller_id": quote.fulfiller_id,
                "rejected_quotes": len(rejected),
            },
        )

        notes = self._uow.notifications
        notes.status_changed(
            "job", job.id, [job.requester_id, job.fulfiller_id], **job_status_fields(job)
        )
        notes.notify(
            quote.fulfiller_id,
            NotificationType.QUOTE_ACCEPTED,
            "Quote accepted",
            f'Your quote for "{job.title}" was accepted.',
            entity="quote",
            entity_id=quote.id,
            job_id=str(job.id),
            status=quote.status,
        )
        for other in rejected:
            notes.notify(
                other.fulfiller_id,
                NotificationType.QUOTE_REJECTED,
                "Quote not selected",
                f'Another quote was selected for "{job.title}".',
                entity="quote",
                entity_id=other.id,
                job_id=str(job.id),
                status=other.status,
            )

        logger.info(
            "quote.accepted",
            quote_id=str(quote.id),
            job_id=str(job.id),
            fulfiller_id=quote.fulfiller_id,
            rejected=len(rejected),
        )
        return quote, job

    async def reject_quote(self, actor: Actor, quote_id: uuid.UUID) -> Quote:
        """Requester declines a single pending quote."""
        actor.require_role(Role.REQUESTER, message="Only requesters can reject quotes")
        quote, job = await self._load_pending(actor, quote_id)

        if not await self._quotes.compare_and_set(
            quote, {"status": QuoteStatus.PENDING.value}, status=QuoteStatus.REJECTED.value
        ):
            raise UnprocessableError("This quote has already been processed")

        await self._activity.record(
            ActivityType.QUOTE_REJECTED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"quote_id": str(quote.id)},
        )
        self._uow.notifications.notify(
            quote.fulfiller_id,
            NotificationType.QUOTE_REJECTED,
            "Quote declined",
            f'Your quote for "{job.title}" was declined.',
            entity="quote",
            entity_id=quote.id,
            job_id=str(job.id),
            status=quote.status,
        )
        logger.info("quote.rejected", quote_id=str(quote.id), job_id=str(job.id))
        return quote

    async def list_quotes_for_job(self, actor: Actor, job_id: uuid.UUID) -> list[Quote]:
        """The job's requester and admins see every quote; fulfillers only their own."""
        job = await self._jobs.get_by_id(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        if actor.role is Role.FULFILLER:
            return await self._quotes.list_for_job(job.id, fulfiller_id=actor.subject_id)
        if not actor.is_admin and job.requester_id != actor.subject_id:
            raise ForbiddenError("Only the job requester can view its quotes")
        return await self._quotes.list_for_job(job.id)

    async def _load_pending(self, actor: Actor, quote_id: uuid.UUID) -> tuple[Quote, Job]:
        quote = await self._quotes.get_by_id(quote_id)
        if quote is None:
            raise NotFoundError("Quote", quote_id)

        job = await load_job_for_update(self._uow, quote.job_id)
        quote = await self._quotes.get_by_id(quote_id, for_update=True)
        if quote is None:
            raise NotFoundError("Quote", quote_id)
        if job.requester_id != actor.subject_id:
            raise ForbiddenError("Only the job requester can act on its quotes")
        if quote.status != QuoteStatus.PENDING:
            raise UnprocessableError("This quote has already been processed")
        return quote, job
