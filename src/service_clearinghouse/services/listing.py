"""Role-scoped visibility for list and read operations.

Each table maps a Role to the filter that limits what that role may see;
list operations look the strategy up instead of branching on role inline.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from service_clearinghouse.domain.enums import JobStatus, Role
from service_clearinghouse.domain.exceptions import ForbiddenError
from service_clearinghouse.infrastructure.database.orm_models import (
    Dispute,
    Job,
    PayoutRequest,
    Review,
    SettlementTransaction,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from sqlalchemy import ColumnElement

    from service_clearinghouse.domain.actor import Actor

    Clauses = list[ColumnElement[bool]]


def _requester_jobs(actor: Actor, status: JobStatus | None) -> Clauses:
    clauses = [Job.requester_id == actor.subject_id]
    if status is not None:
        clauses.append(Job.status == status.value)
    return clauses


def _fulfiller_jobs(actor: Actor, status: JobStatus | None) -> Clauses:
    # Browsing the open marketplace, or working through their own jobs
    if status in (None, JobStatus.OPEN):
        return [Job.status == JobStatus.OPEN.value]
    return [Job.fulfiller_id == actor.subject_id, Job.status == status.value]


def _admin_jobs(actor: Actor, status: JobStatus | None) -> Clauses:
    return [] if status is None else [Job.status == status.value]


JOB_VISIBILITY: Mapping[Role, Callable[[Actor, JobStatus | None], Clauses]] = {
    Role.REQUESTER: _requester_jobs,
    Role.FULFILLER: _fulfiller_jobs,
    Role.ADMIN: _admin_jobs,
}

DISPUTE_VISIBILITY: Mapping[Role, Callable[[Actor], Clauses]] = {
    Role.REQUESTER: lambda actor: [Dispute.raised_by == actor.subject_id],
    Role.FULFILLER: lambda actor: [Dispute.raised_by == actor.subject_id],
    Role.ADMIN: lambda actor: [],
}

TRANSACTION_VISIBILITY: Mapping[Role, Callable[[Actor], Clauses]] = {
    Role.REQUESTER: lambda actor: [SettlementTransaction.payer_id == actor.subject_id],
    Role.FULFILLER: lambda actor: [SettlementTransaction.payee_id == actor.subject_id],
    Role.ADMIN: lambda actor: [],
}

PAYOUT_VISIBILITY: Mapping[Role, Callable[[Actor], Clauses]] = {
    Role.FULFILLER: lambda actor: [PayoutRequest.fulfiller_id == actor.subject_id],
    Role.ADMIN: lambda actor: [],
}


def _requester_reviews(actor: Actor, fulfiller_id: str | None) -> Clauses:
    clauses = [Review.requester_id == actor.subject_id]
    if fulfiller_id is not None:
        clauses.append(Review.fulfiller_id == fulfiller_id)
    return clauses


REVIEW_VISIBILITY: Mapping[Role, Callable[[Actor, str | None], Clauses]] = {
    Role.REQUESTER: _requester_reviews,
    Role.FULFILLER: lambda actor, fulfiller_id: [Review.fulfiller_id == actor.subject_id],
    Role.ADMIN: lambda actor, fulfiller_id: (
        [] if fulfiller_id is None else [Review.fulfiller_id == fulfiller_id]
    ),
}


def visibility_clauses(
    table: Mapping[Role, Callable[..., Clauses]],
    actor: Actor,
    *args: object,
) -> Clauses:
    """Filter clauses for ``actor`` from a visibility table.

    Roles missing from the table are refused.
    """
    strategy = table.get(actor.role)
    if strategy is None:
        raise ForbiddenError(f"The {actor.role.value} role cannot list these records")
    return list(strategy(actor, *args))


def can_view_job(actor: Actor, job: Job) -> bool:
    if actor.role is Role.ADMIN:
        return True
    if actor.role is Role.REQUESTER:
        return job.requester_id == actor.subject_id
    return job.status == JobStatus.OPEN or job.fulfiller_id == actor.subject_id
