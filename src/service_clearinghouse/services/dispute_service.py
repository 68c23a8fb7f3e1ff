"""Dispute Service — participants contest a job, admins settle it.

Resolution always carries an escrow action, so a resolved dispute never
leaves its job stuck in ``disputed``:
    - release: the pending settlement is completed, job -> completed;
    - refund:  the escrow is returned to the requester, job -> refunded.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from service_clearinghouse.domain.enums import (
    ActivityType,
    DisputeStatus,
    EscrowAction,
    JobStatus,
    NotificationType,
    Role,
)
from service_clearinghouse.domain.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.domain.state_machine import can_transition, can_transition_dispute
from service_clearinghouse.infrastructure.database.orm_models import Dispute
from service_clearinghouse.infrastructure.database.repositories import (
    ActivityRepository,
    DisputeRepository,
    JobRepository,
    ReviewRepository,
)
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.escrow_service import EscrowService
from service_clearinghouse.services.job_service import (
    MAX_PAGE_SIZE,
    apply_job_transition,
    job_status_fields,
    load_job_for_update,
)
from service_clearinghouse.services.listing import DISPUTE_VISIBILITY, visibility_clauses

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from service_clearinghouse.config import Settings
    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.services.payment_service import PaymentGateway
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

MIN_REASON_LENGTH = 20
MAX_EVIDENCE_ITEMS = 5


class DisputeService:
    def __init__(
        self,
        uow: UnitOfWork,
        gateway: PaymentGateway | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._uow = uow
        self._jobs = JobRepository(uow.session)
        self._disputes = DisputeRepository(uow.session)
        self._reviews = ReviewRepository(uow.session)
        self._activity = ActivityRepository(uow.session)
        self._escrow = EscrowService(uow, gateway, settings)

    async def open_dispute(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        reason: str,
        evidence: Sequence[str] = (),
    ) -> Dispute:
        """A job participant disputes an active or unreviewed completed job.

        The other party is notified.
        """
        reason = (reason or "").strip()
        if len(reason) < MIN_REASON_LENGTH:
            raise ValidationError(f"Reason must be at least {MIN_REASON_LENGTH} characters")
        if len(evidence) > MAX_EVIDENCE_ITEMS:
            raise ValidationError(f"At most {MAX_EVIDENCE_ITEMS} evidence items are allowed")

        job = await load_job_for_update(self._uow, job_id)
        if actor.subject_id not in (job.requester_id, job.fulfiller_id):
            raise ForbiddenError("Only the job requester or fulfiller can open a dispute")
        can_transition(job.status, JobStatus.DISPUTED).raise_if_denied()
        if await self._reviews.exists_for_job(job.id):
            raise UnprocessableError("A reviewed job can no longer be disputed")

        dispute = await self._disputes.create(
            Dispute(
                job_id=job.id,
                raised_by=actor.subject_id,
                reason=reason,
                evidence=[str(url) for url in evidence],
                status=DisputeStatus.OPEN.value,
            )
        )
        await apply_job_transition(self._jobs, job, status=JobStatus.DISPUTED)
        await self._activity.record(
            ActivityType.DISPUTE_OPENED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"dispute_id": str(dispute.id)},
        )

        other = job.fulfiller_id if actor.subject_id == job.requester_id else job.requester_id
        notes = self._uow.notifications
        notes.status_changed(
            "job", job.id, [job.requester_id, job.fulfiller_id], **job_status_fields(job)
        )
        if other is not None:
            notes.notify(
                other,
                NotificationType.DISPUTE_OPENED,
                "Dispute opened",
                f'A dispute was opened on "{job.title}".',
                entity="dispute",
                entity_id=dispute.id,
                job_id=str(job.id),
                status=dispute.status,
            )

        logger.info(
            "dispute.opened",
            dispute_id=str(dispute.id),
            job_id=str(job.id),
            raised_by=actor.subject_id,
        )
        return dispute

    async def resolve_dispute(
        self,
        actor: Actor,
        dispute_id: uuid.UUID,
        status: DisputeStatus,
        notes: str | None = None,
        escrow_action: EscrowAction | None = None,
    ) -> Dispute:
        """Admin moves a dispute to investigating, or resolves it with an escrow action."""
        actor.require_role(Role.ADMIN, message="Only admins can resolve disputes")
        if status is DisputeStatus.INVESTIGATING and escrow_action is not None:
            raise ValidationError("An escrow action can only be applied when resolving")
        if status is DisputeStatus.RESOLVED and escrow_action is None:
            raise ValidationError("Resolving a dispute requires an escrow action")

        dispute = await self._disputes.get_by_id(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        job = await load_job_for_update(self._uow, dispute.job_id)
        dispute = await self._disputes.get_by_id(dispute_id, for_update=True)
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        if dispute.status == DisputeStatus.RESOLVED:
            raise ConflictError("Dispute has already been resolved")
        can_transition_dispute(dispute.status, status).raise_if_denied()

        if escrow_action is EscrowAction.RELEASE:
            await self._escrow.resolve_release(job, actor.subject_id)
        elif escrow_action is EscrowAction.REFUND:
            await self._escrow.resolve_refund(job, actor.subject_id)

        values: dict[str, object] = {"status": status.value}
        if notes is not None:
            values["resolution_notes"] = notes
        if status is DisputeStatus.RESOLVED:
            values.update(
                escrow_action=escrow_action.value,
                resolved_by=actor.subject_id,
                resolved_at=datetime.now(UTC),
            )
        if not await self._disputes.compare_and_set(dispute, {"status": dispute.status}, **values):
            raise ConflictError("Dispute was updated concurrently, please retry")

        resolved = status is DisputeStatus.RESOLVED
        await self._activity.record(
            ActivityType.DISPUTE_RESOLVED if resolved else ActivityType.DISPUTE_UPDATED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={
                "dispute_id": str(dispute.id),
                "status": status.value,
                "escrow_action": escrow_action.value if escrow_action else None,
            },
        )

        fanout = self._uow.notifications
        participants = [job.requester_id, job.fulfiller_id]
        fanout.status_changed(
            "dispute", dispute.id, participants, status=dispute.status, job_id=str(job.id)
        )
        fanout.status_changed("job", job.id, participants, **job_status_fields(job))
        for recipient in dict.fromkeys(p for p in participants if p is not None):
            fanout.notify(
                recipient,
                NotificationType.DISPUTE_RESOLVED if resolved else NotificationType.DISPUTE_UPDATED,
                "Dispute resolved" if resolved else "Dispute under investigation",
                notes or f'The dispute on "{job.title}" is now {dispute.status}.',
                entity="dispute",
                entity_id=dispute.id,
                job_id=str(job.id),
                status=dispute.status,
            )

        logger.info(
            "dispute.updated",
            dispute_id=str(dispute.id),
            status=dispute.status,
            escrow_action=escrow_action.value if escrow_action else None,
            admin=actor.subject_id,
        )
        return dispute

    async def get_dispute(self, actor: Actor, dispute_id: uuid.UUID) -> Dispute:
        dispute = await self._disputes.get_by_id(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        if not actor.is_admin:
            job = await self._jobs.get_by_id(dispute.job_id)
            if job is None or actor.subject_id not in (job.requester_id, job.fulfiller_id):
                raise ForbiddenError("You do not have access to this dispute")
        return dispute

    async def list_disputes(
        self,
        actor: Actor,
        status: DisputeStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Dispute], int]:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        clauses = visibility_clauses(DISPUTE_VISIBILITY, actor)
        if status is not None:
            clauses.append(Dispute.status == status.value)
        return await self._disputes.search(clauses, page, limit)
