"""Job Service — listing intake, moderation and role-scoped reads.

Also home of the two helpers every job-mutating service uses:
    - ``load_job_for_update``: take the job lock, then read the job fresh;
    - ``apply_job_transition``: compare-and-set the job's status columns.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from service_clearinghouse.domain.commission import to_money
from service_clearinghouse.domain.enums import (
    ActivityType,
    EscrowStatus,
    JobStatus,
    NotificationType,
    Role,
)
from service_clearinghouse.domain.exceptions import (
    ForbiddenError,
    NotFoundError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.domain.risk import calculate_risk_score
from service_clearinghouse.domain.state_machine import can_transition
from service_clearinghouse.infrastructure.database.orm_models import Job
from service_clearinghouse.infrastructure.database.repositories import (
    ActivityRepository,
    JobRepository,
)
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.listing import (
    JOB_VISIBILITY,
    can_view_job,
    visibility_clauses,
)

if TYPE_CHECKING:
    import uuid
    from datetime import datetime
    from decimal import Decimal

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.database.orm_models import ActivityEvent
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


async def load_job_for_update(uow: UnitOfWork, job_id: uuid.UUID) -> Job:
    """Serialize on the job, then read its committed state."""
    await uow.lock_job(job_id)
    job = await JobRepository(uow.session).get_by_id(job_id, for_update=True)
    if job is None:
        raise NotFoundError("Job", job_id)
    return job


async def apply_job_transition(
    jobs: JobRepository,
    job: Job,
    *,
    status: JobStatus | None = None,
    escrow_status: EscrowStatus | None = None,
    **values: object,
) -> None:
    """Write new status columns only if nobody else moved them first."""
    expected: dict[str, str] = {}
    if status is not None:
        expected["status"] = job.status
        values["status"] = status.value
    if escrow_status is not None:
        expected["escrow_status"] = job.escrow_status
        values["escrow_status"] = escrow_status.value

    if not await jobs.compare_and_set(job, expected, **values):
        logger.warning("job.concurrent_modification", job_id=str(job.id), expected=expected)
        raise UnprocessableError(
            "Job changed while this operation was running, please retry",
            code="CONCURRENT_MODIFICATION",
        )


def job_status_fields(job: Job) -> dict[str, str]:
    return {"status": job.status, "escrow_status": job.escrow_status}


class JobService:
    """Creates, moderates and reads job listings."""

    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow
        self._jobs = JobRepository(uow.session)
        self._activity = ActivityRepository(uow.session)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def create_job(
        self,
        actor: Actor,
        title: str,
        description: str,
        category: str,
        budget: Decimal,
        scheduled_at: datetime | None = None,
    ) -> Job:
        """Post a job. It waits in pending_validation until an admin approves it."""
        actor.require_role(Role.REQUESTER, message="Only requesters can post jobs")

        title, description, category = title.strip(), description.strip(), category.strip()
        if not 5 <= len(title) <= 100:
            raise ValidationError("Title must be between 5 and 100 characters")
        if len(description) < 20:
            raise ValidationError("Description must be at least 20 characters")
        if not category:
            raise ValidationError("Category is required")
        if budget <= 0:
            raise ValidationError("Budget must be greater than zero")

        budget = to_money(budget)
        job = Job(
            requester_id=actor.subject_id,
            title=title,
            description=description,
            category=category.lower(),
            budget=budget,
            scheduled_at=scheduled_at,
            risk_score=calculate_risk_score(budget, category, description, scheduled_at),
            status=JobStatus.PENDING_VALIDATION.value,
            escrow_status=EscrowStatus.NOT_FUNDED.value,
            before_evidence=[],
            after_evidence=[],
        )
        job = await self._jobs.create(job)

        await self._activity.record(
            ActivityType.JOB_CREATED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"budget": str(budget), "risk_score": job.risk_score},
        )
        logger.info(
            "job.created",
            job_id=str(job.id),
            budget=budget,
            risk_score=job.risk_score,
        )
        return job

    async def approve_job(self, actor: Actor, job_id: uuid.UUID) -> Job:
        """Admin publishes a pending listing to the marketplace."""
        return await self._moderate(actor, job_id, JobStatus.OPEN, reason=None)

    async def reject_job(self, actor: Actor, job_id: uuid.UUID, reason: str | None = None) -> Job:
        """Admin declines a pending listing."""
        return await self._moderate(actor, job_id, JobStatus.REJECTED, reason=reason)

    async def _moderate(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        target: JobStatus,
        reason: str | None,
    ) -> Job:
        actor.require_role(Role.ADMIN, message="Only admins can moderate job listings")
        job = await load_job_for_update(self._uow, job_id)
        can_transition(job.status, target).raise_if_denied()

        await apply_job_transition(self._jobs, job, status=target)

        approved = target is JobStatus.OPEN
        await self._activity.record(
            ActivityType.JOB_APPROVED if approved else ActivityType.JOB_REJECTED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"reason": reason} if reason else None,
        )
        notes = self._uow.notifications
        notes.status_changed("job", job.id, [job.requester_id], **job_status_fields(job))
        if approved:
            notes.notify(
                job.requester_id,
                NotificationType.JOB_APPROVED,
                "Job approved",
                f'Your job "{job.title}" is now open for quotes.',
                entity="job",
                entity_id=job.id,
            )
        else:
            notes.notify(
                job.requester_id,
                NotificationType.JOB_REJECTED,
                "Job not approved",
                reason or f'Your job "{job.title}" was not approved.',
                entity="job",
                entity_id=job.id,
            )

        logger.info("job.moderated", job_id=str(job.id), status=job.status, admin=actor.subject_id)
        return job

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, actor: Actor, job_id: uuid.UUID) -> Job:
        job = await self._jobs.get_by_id(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        if not can_view_job(actor, job):
            raise ForbiddenError("You do not have access to this job")
        return job

    async def list_jobs(
        self,
        actor: Actor,
        status: JobStatus | None = None,
        category: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Job], int]:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        clauses = visibility_clauses(JOB_VISIBILITY, actor, status)
        if category:
            clauses.append(Job.category == category.strip().lower())
        return await self._jobs.search(clauses, page, limit)

    async def get_activity(self, actor: Actor, job_id: uuid.UUID) -> list[ActivityEvent]:
        """Audit trail of a job, for its participants and admins."""
        job = await self.get_job(actor, job_id)
        if not actor.is_admin and actor.subject_id not in (job.requester_id, job.fulfiller_id):
            raise ForbiddenError("Only job participants can view its activity")
        return await self._activity.list_for_job(job.id)
