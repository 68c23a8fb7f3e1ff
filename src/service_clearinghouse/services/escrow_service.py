"""Escrow Service — the job and escrow lifecycle engine.

Coordinates, inside one UnitOfWork per operation:
    - the transition guards (domain/state_machine.py);
    - the job row, written with compare-and-set updates;
    - the settlement ledger (pending on funding, completed on release);
    - the activity log;
    - the notifications staged for publication after commit.

Funding has two paths. Without a payment gateway the escrow is funded
immediately. With one, ``fund_escrow`` opens a hosted checkout session and
``confirm_escrow_funded`` (webhook or polling) funds the escrow once the
gateway reports the session paid. Confirmation is idempotent per session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from service_clearinghouse.domain.actor import SYSTEM_ACTOR_ID
from service_clearinghouse.domain.commission import to_money
from service_clearinghouse.domain.enums import (
    ActivityType,
    EscrowAction,
    EscrowStatus,
    JobStatus,
    NotificationType,
    PaymentStatus,
    Role,
)
from service_clearinghouse.domain.exceptions import (
    ForbiddenError,
    NotFoundError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.domain.state_machine import (
    can_transition_escrow,
    check_escrow_funding,
    check_job_transition,
)
from service_clearinghouse.infrastructure.database.orm_models import EscrowPayment
from service_clearinghouse.infrastructure.database.repositories import (
    ActivityRepository,
    FulfillerProfileRepository,
    JobRepository,
    PaymentRepository,
    QuoteRepository,
)
from service_clearinghouse.infrastructure.locks import profile_lock_key
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.job_service import (
    apply_job_transition,
    job_status_fields,
    load_job_for_update,
)
from service_clearinghouse.services.settlement_service import SettlementLedger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence
    from decimal import Decimal

    from service_clearinghouse.config import Settings
    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.database.orm_models import Job
    from service_clearinghouse.services.payment_service import PaymentGateway
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

MAX_EVIDENCE_ITEMS = 3


@dataclass(frozen=True)
class FundingResult:
    """What ``fund_escrow`` hands back to the caller.

    ``simulated`` is True when no gateway is configured and the escrow was
    funded on the spot; otherwise the caller redirects to ``redirect_url``.
    """

    job_id: uuid.UUID
    amount: Decimal
    simulated: bool
    session_ref: str | None = None
    redirect_url: str | None = None


class EscrowService:
    """Moves jobs and their escrow through funding, work and settlement."""

    def __init__(
        self,
        uow: UnitOfWork,
        gateway: PaymentGateway | None = None,
        settings: Settings | None = None,
    ) -> None:
        if settings is None:
            from service_clearinghouse.config import get_settings

            settings = get_settings()
        self._uow = uow
        self._gateway = gateway
        self._settings = settings
        self._jobs = JobRepository(uow.session)
        self._quotes = QuoteRepository(uow.session)
        self._payments = PaymentRepository(uow.session)
        self._activity = ActivityRepository(uow.session)
        self._profiles = FulfillerProfileRepository(uow.session)
        self._ledger = SettlementLedger(uow.session, settings.commission_rate)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def fund_escrow(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        amount: Decimal | None = None,
    ) -> FundingResult:
        """Fund the escrow of an assigned job.

        The escrow always holds the accepted quote amount, else the job
        budget. An explicit ``amount`` is only a confirmation of that figure.
        With a gateway configured nothing is written until the hosted session
        has been created, so a gateway failure leaves the job untouched.
        """
        actor.require_role(Role.REQUESTER, message="Only requesters can fund escrow")
        job = await load_job_for_update(self._uow, job_id)
        if job.requester_id != actor.subject_id:
            raise ForbiddenError("Only the job requester can fund escrow")
        check_escrow_funding(job.status, job.escrow_status).raise_if_denied()

        accepted = await self._quotes.get_accepted_for_job(job.id)
        due = to_money(accepted.amount if accepted is not None else job.budget)
        if amount is not None and to_money(amount) != due:
            raise ValidationError(f"Escrow amount must be exactly {due}")
        amount = due

        if self._gateway is None:
            await self._mark_funded(job, amount, actor=actor.subject_id, simulated=True)
            return FundingResult(job_id=job.id, amount=amount, simulated=True)

        session = await self._gateway.create_hosted_session(
            amount,
            job_ref=str(job.id),
            description=f"Escrow for: {job.title}",
            metadata={"requester_id": job.requester_id},
        )
        await self._payments.create(
            EscrowPayment(
                job_id=job.id,
                requester_id=job.requester_id,
                fulfiller_id=job.fulfiller_id,
                session_ref=session.session_ref,
                redirect_url=session.redirect_url,
                amount=amount,
                status=PaymentStatus.AWAITING_PAYMENT.value,
            )
        )
        await self._activity.record(
            ActivityType.ESCROW_CHECKOUT_STARTED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"session_ref": session.session_ref, "amount": str(amount)},
        )
        logger.info(
            "escrow.checkout_started",
            job_id=str(job.id),
            session_ref=session.session_ref,
            amount=amount,
        )
        return FundingResult(
            job_id=job.id,
            amount=amount,
            simulated=False,
            session_ref=session.session_ref,
            redirect_url=session.redirect_url,
        )

    async def confirm_escrow_funded(
        self,
        session_ref: str,
        payment_ref: str | None = None,
        payment_method: str | None = None,
    ) -> bool:
        """Fund the escrow behind a paid checkout session.

        Returns True only for the call that actually funded the escrow;
        repeated confirmations of the same session are no-ops.
        """
        payment = await self._payments.get_by_session_ref(session_ref)
        if payment is None:
            logger.warning("escrow.unknown_session", session_ref=session_ref)
            return False
        if payment.status == PaymentStatus.PAID:
            logger.info("escrow.session_already_confirmed", session_ref=session_ref)
            return False

        job = await load_job_for_update(self._uow, payment.job_id)
        payment = await self._payments.get_by_session_ref(session_ref, for_update=True)
        if payment is None or not await self._payments.mark_paid(
            payment, payment_ref, payment_method
        ):
            logger.info("escrow.session_already_confirmed", session_ref=session_ref)
            return False

        if not check_escrow_funding(job.status, job.escrow_status).allowed:
            # Money arrived for a job that can no longer be funded; kept as a
            # paid EscrowPayment for an admin to reconcile.
            logger.warning(
                "escrow.payment_not_applied",
                job_id=str(job.id),
                session_ref=session_ref,
                status=job.status,
                escrow_status=job.escrow_status,
            )
            return False

        await self._mark_funded(job, payment.amount, actor=SYSTEM_ACTOR_ID, simulated=False)
        return True

    async def refresh_payment_status(self, actor: Actor, session_ref: str) -> bool:
        """Ask the gateway about a checkout session and confirm it if paid."""
        payment = await self._payments.get_by_session_ref(session_ref)
        if payment is None:
            raise NotFoundError("Payment session", session_ref)
        if not actor.is_admin and payment.requester_id != actor.subject_id:
            raise ForbiddenError("You do not have access to this payment")
        if payment.status == PaymentStatus.PAID:
            return False
        if self._gateway is None:
            raise UnprocessableError(
                "No payment gateway is configured", code="PAYMENT_GATEWAY_DISABLED"
            )

        session = await self._gateway.confirm_session(session_ref)
        if not session.is_paid:
            logger.info("escrow.session_not_paid", session_ref=session_ref, status=session.status)
            return False
        return await self.confirm_escrow_funded(
            session_ref,
            payment_ref=session.payment_ref,
            payment_method=session.payment_method,
        )

    async def _mark_funded(
        self,
        job: Job,
        amount: Decimal,
        *,
        actor: str,
        simulated: bool,
    ) -> None:
        await apply_job_transition(
            self._jobs,
            job,
            escrow_status=EscrowStatus.FUNDED,
            status=JobStatus.ASSIGNED,
            escrow_amount=amount,
        )
        await self._ledger.record_funding(job, amount)
        await self._activity.record(
            ActivityType.ESCROW_FUNDED,
            actor=actor,
            job_id=job.id,
            metadata={"amount": str(amount), "simulated": simulated},
        )

        notes = self._uow.notifications
        notes.status_changed(
            "job", job.id, [job.requester_id, job.fulfiller_id], **job_status_fields(job)
        )
        notes.notify(
            job.fulfiller_id,
            NotificationType.ESCROW_FUNDED,
            "Escrow funded",
            f'Escrow for "{job.title}" is funded. You can start the work.',
            entity="job",
            entity_id=job.id,
        )
        notes.notify(
            job.requester_id,
            NotificationType.PAYMENT_CONFIRMED,
            "Payment confirmed",
            f'Your payment of {amount} for "{job.title}" is held in escrow.',
            entity="job",
            entity_id=job.id,
        )
        logger.info("escrow.funded", job_id=str(job.id), amount=amount, simulated=simulated)

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    async def start_job(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        before_evidence: Sequence[str] = (),
    ) -> Job:
        """Assigned fulfiller starts the work, optionally with before photos."""
        return await self._advance_work(
            actor, job_id, JobStatus.IN_PROGRESS, "before_evidence", before_evidence
        )

    async def mark_complete(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        after_evidence: Sequence[str] = (),
    ) -> Job:
        """Assigned fulfiller marks the work done; the requester is asked to review."""
        return await self._advance_work(
            actor, job_id, JobStatus.COMPLETED, "after_evidence", after_evidence
        )

    async def _advance_work(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        target: JobStatus,
        evidence_field: str,
        evidence: Sequence[str],
    ) -> Job:
        actor.require_role(Role.FULFILLER, message="Only fulfillers can update work progress")
        job = await load_job_for_update(self._uow, job_id)
        if job.fulfiller_id != actor.subject_id:
            raise ForbiddenError("Only the assigned fulfiller can update this job")
        check_job_transition(job.status, target, job.escrow_status).raise_if_denied()

        current = list(getattr(job, evidence_field) or [])
        merged = (current + [str(url) for url in evidence])[:MAX_EVIDENCE_ITEMS]
        await apply_job_transition(self._jobs, job, status=target, **{evidence_field: merged})

        started = target is JobStatus.IN_PROGRESS
        await self._activity.record(
            ActivityType.JOB_STARTED if started else ActivityType.JOB_COMPLETED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"evidence_count": len(merged)},
        )

        notes = self._uow.notifications
        notes.status_changed(
            "job", job.id, [job.requester_id, job.fulfiller_id], **job_status_fields(job)
        )
        if started:
            notes.notify(
                job.requester_id,
                NotificationType.JOB_STARTED,
                "Work started",
                f'Work on "{job.title}" has started.',
                entity="job",
                entity_id=job.id,
            )
        else:
            notes.notify(
                job.requester_id,
                NotificationType.JOB_COMPLETED,
                "Job completed",
                f'"{job.title}" is marked as completed. Review the work and release payment.',
                entity="job",
                entity_id=job.id,
            )

        logger.info("job.progressed", job_id=str(job.id), status=job.status)
        return job

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def release_escrow(self, actor: Actor, job_id: uuid.UUID) -> Job:
        """Requester releases the full escrowed amount to the fulfiller."""
        job = await self._load_for_settlement(actor, job_id)
        amount = job.escrow_amount or job.budget

        await apply_job_transition(
            self._jobs, job, escrow_status=EscrowStatus.RELEASED, released_amount=amount
        )
        txn = await self._ledger.settle_release(job, amount)
        await self._refresh_fulfiller_metrics(job.fulfiller_id)
        await self._activity.record(
            ActivityType.ESCROW_RELEASED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"amount": str(amount), "net": str(txn.net_amount)},
        )
        self._notify_released(job, txn.net_amount)

        logger.info("escrow.released", job_id=str(job.id), gross=amount, net=txn.net_amount)
        return job

    async def partial_release(self, actor: Actor, job_id: uuid.UUID, amount: Decimal) -> Job:
        """Release only ``amount``; the rest of the escrow is forfeited."""
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        job = await self._load_for_settlement(actor, job_id)
        amount = to_money(amount)
        if amount > job.budget:
            raise ValidationError(f"Cannot exceed job budget of {job.budget}")
        escrowed = job.escrow_amount or job.budget
        if amount > escrowed:
            raise UnprocessableError(f"Cannot exceed escrowed amount of {escrowed}")

        await apply_job_transition(
            self._jobs, job, escrow_status=EscrowStatus.RELEASED, released_amount=amount
        )
        txn = await self._ledger.settle_partial(job, amount)
        await self._refresh_fulfiller_metrics(job.fulfiller_id)
        await self._activity.record(
            ActivityType.ESCROW_PARTIALLY_RELEASED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"amount": str(amount), "escrowed": str(escrowed)},
        )
        self._notify_released(job, txn.net_amount)

        logger.info(
            "escrow.partially_released",
            job_id=str(job.id),
            amount=amount,
            forfeited=escrowed - amount,
        )
        return job

    async def auto_release(self, job_id: uuid.UUID) -> bool:
        """Release escrow of a completed job on the requester's behalf.

        Returns False when the job is no longer eligible.
        """
        job = await load_job_for_update(self._uow, job_id)
        if job.status != JobStatus.COMPLETED or job.escrow_status != EscrowStatus.FUNDED:
            return False

        amount = job.escrow_amount or job.budget
        await apply_job_transition(
            self._jobs, job, escrow_status=EscrowStatus.RELEASED, released_amount=amount
        )
        txn = await self._ledger.settle_release(job, amount)
        await self._refresh_fulfiller_metrics(job.fulfiller_id)
        await self._activity.record(
            ActivityType.ESCROW_AUTO_RELEASED,
            actor=SYSTEM_ACTOR_ID,
            job_id=job.id,
            metadata={"amount": str(amount)},
        )
        self._notify_released(job, txn.net_amount)
        logger.info("escrow.auto_released", job_id=str(job.id), amount=amount)
        return True

    async def admin_override_escrow(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        action: EscrowAction,
        reason: str,
    ) -> Job:
        """Admin forces a funded escrow to release or refund."""
        actor.require_role(Role.ADMIN, message="Only admins can override escrow")
        reason = (reason or "").strip()
        if len(reason) < 5:
            raise ValidationError("Reason must be at least 5 characters")

        job = await load_job_for_update(self._uow, job_id)
        if job.escrow_status != EscrowStatus.FUNDED:
            raise UnprocessableError("Escrow must be in 'funded' state to override")

        amount = job.escrow_amount or job.budget
        if action is EscrowAction.RELEASE:
            await apply_job_transition(
                self._jobs,
                job,
                status=JobStatus.COMPLETED,
                escrow_status=EscrowStatus.RELEASED,
                released_amount=amount,
            )
            await self._ledger.settle_release(job, amount)
            await self._refresh_fulfiller_metrics(job.fulfiller_id)
        else:
            await apply_job_transition(
                self._jobs, job, status=JobStatus.REFUNDED, escrow_status=EscrowStatus.REFUNDED
            )
            await self._ledger.refund(job)
            await self._refresh_fulfiller_metrics(job.fulfiller_id)

        await self._activity.record(
            ActivityType.ESCROW_OVERRIDDEN,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"action": action.value, "reason": reason, "amount": str(amount)},
        )
        self._notify_settled(job, action, f"An admin has {_past(action)} the escrow: {reason}")

        logger.warning(
            "escrow.admin_override",
            job_id=str(job.id),
            admin=actor.subject_id,
            action=action.value,
            reason=reason,
        )
        return job

    # ------------------------------------------------------------------
    # Dispute settlement (caller holds the job lock)
    # ------------------------------------------------------------------

    async def resolve_release(self, job: Job, actor_id: str) -> None:
        """Settle a disputed job in the fulfiller's favour.

        Idempotent against the escrow: an already released escrow only moves
        the job out of disputed.
        """
        if job.escrow_status == EscrowStatus.REFUNDED:
            raise UnprocessableError("Escrow has already been refunded")
        if job.escrow_status == EscrowStatus.NOT_FUNDED:
            raise UnprocessableError("Escrow was never funded, nothing to release")

        values: dict[str, object] = {}
        escrow_target = None
        if job.escrow_status == EscrowStatus.FUNDED:
            escrow_target = EscrowStatus.RELEASED
            values["released_amount"] = job.escrow_amount or job.budget
        job_target = JobStatus.COMPLETED if job.status == JobStatus.DISPUTED else None

        if escrow_target is not None or job_target is not None:
            await apply_job_transition(
                self._jobs, job, status=job_target, escrow_status=escrow_target, **values
            )
        if escrow_target is not None:
            await self._ledger.settle_release(job, job.released_amount)
            await self._refresh_fulfiller_metrics(job.fulfiller_id)
            self._notify_settled(
                job, EscrowAction.RELEASE, "The dispute was resolved in the fulfiller's favour."
            )
        logger.info("escrow.dispute_released", job_id=str(job.id), admin=actor_id)

    async def resolve_refund(self, job: Job, actor_id: str) -> None:
        """Settle a disputed job in the requester's favour.

        Idempotent against the escrow: an already refunded escrow only moves
        the job out of disputed, and an unfunded one just refunds the job.
        """
        if job.escrow_status == EscrowStatus.RELEASED:
            raise UnprocessableError("Escrow has already been released")

        escrow_target = None
        if job.escrow_status == EscrowStatus.FUNDED:
            can_transition_escrow(job.escrow_status, EscrowStatus.REFUNDED).raise_if_denied()
            escrow_target = EscrowStatus.REFUNDED
        job_target = JobStatus.REFUNDED if job.status == JobStatus.DISPUTED else None

        if escrow_target is not None or job_target is not None:
            await apply_job_transition(
                self._jobs, job, status=job_target, escrow_status=escrow_target
            )
        if escrow_target is not None:
            await self._ledger.refund(job)
            await self._refresh_fulfiller_metrics(job.fulfiller_id)
            self._notify_settled(
                job, EscrowAction.REFUND, "The dispute was resolved in the requester's favour."
            )
        logger.info("escrow.dispute_refunded", job_id=str(job.id), admin=actor_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _load_for_settlement(self, actor: Actor, job_id: uuid.UUID) -> Job:
        actor.require_role(Role.REQUESTER, message="Only requesters can release escrow")
        job = await load_job_for_update(self._uow, job_id)
        if job.requester_id != actor.subject_id:
            raise ForbiddenError("Only the job requester can release escrow")
        if job.status != JobStatus.COMPLETED:
            raise UnprocessableError("Job must be marked as completed by the fulfiller first")
        can_transition_escrow(job.escrow_status, EscrowStatus.RELEASED).raise_if_denied()
        return job

    async def _refresh_fulfiller_metrics(self, fulfiller_id: str | None) -> None:
        """Completion rate = completed / (completed + refunded), 100 with no history."""
        if fulfiller_id is None:
            return
        await self._uow.lock(profile_lock_key(fulfiller_id))
        completed = await self._jobs.count_for_fulfiller(fulfiller_id, [JobStatus.COMPLETED])
        refunded = await self._jobs.count_for_fulfiller(fulfiller_id, [JobStatus.REFUNDED])
        finished = completed + refunded
        rate = round(completed / finished * 100) if finished else 100
        await self._profiles.save_metrics(fulfiller_id, completed, rate)

    def _notify_released(self, job: Job, net: Decimal) -> None:
        notes = self._uow.notifications
        notes.status_changed(
            "job", job.id, [job.requester_id, job.fulfiller_id], **job_status_fields(job)
        )
        notes.notify(
            job.fulfiller_id,
            NotificationType.ESCROW_RELEASED,
            "Payment released",
            f'{net} for "{job.title}" has been released to you.',
            entity="job",
            entity_id=job.id,
            net_amount=str(net),
        )

    def _notify_settled(self, job: Job, action: EscrowAction, message: str) -> None:
        notes = self._uow.notifications
        notes.status_changed(
            "job", job.id, [job.requester_id, job.fulfiller_id], **job_status_fields(job)
        )
        if action is EscrowAction.RELEASE:
            notification_type, title = NotificationType.ESCROW_RELEASED, "Escrow released"
        else:
            notification_type, title = NotificationType.ESCROW_REFUNDED, "Escrow refunded"
        for recipient in (job.requester_id, job.fulfiller_id):
            if recipient is None:
                continue
            notes.notify(
                recipient, notification_type, title, message, entity="job", entity_id=job.id
            )


def _past(action: EscrowAction) -> str:
    return "released" if action is EscrowAction.RELEASE else "refunded"
