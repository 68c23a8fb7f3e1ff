"""Transition guard tables for jobs, escrow, payouts and disputes.

Uses python-statemachine to encode each legal-transition table. A guard check
fires the target's event on a throw-away machine started at the current
status; ``TransitionNotAllowed`` becomes a human-readable reason that callers
return verbatim.

Job transitions:
    pending_validation -> open | rejected        (approve_listing | reject_listing)
    open               -> assigned | expired     (assign_fulfiller | expire_listing)
    assigned           -> in_progress | disputed (start_work | raise_dispute)
    in_progress        -> completed | disputed   (complete_work | raise_dispute)
    completed          -> disputed               (raise_dispute)
    disputed           -> completed | refunded   (complete_work | refund_requester)

Escrow transitions:
    not_funded -> funded               (fund)
    funded     -> released | refunded  (release | refund)

No state may transition to itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from service_clearinghouse.domain.enums import (
    DisputeStatus,
    EscrowStatus,
    JobStatus,
    PayoutStatus,
)
from service_clearinghouse.domain.exceptions import InvalidStateTransitionError

if TYPE_CHECKING:
    from collections.abc import Mapping


class _StartsAtStatus:
    """Mixin: start a machine at a persisted status value."""

    def __init__(self, current_status: str) -> None:
        current_status = str(current_status)
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        return str(self.current_state.value)


class JobStateMachine(_StartsAtStatus, StateMachine):
    """Guards the job lifecycle."""

    # --- States ---
    PENDING_VALIDATION = State("Pending validation", value="pending_validation", initial=True)
    OPEN = State("Open", value="open")
    ASSIGNED = State("Assigned", value="assigned")
    IN_PROGRESS = State("In progress", value="in_progress")
    COMPLETED = State("Completed", value="completed")
    DISPUTED = State("Disputed", value="disputed")
    REJECTED = State("Rejected", value="rejected", final=True)
    REFUNDED = State("Refunded", value="refunded", final=True)
    EXPIRED = State("Expired", value="expired", final=True)

    # --- Intake ---
    approve_listing = PENDING_VALIDATION.to(OPEN)
    reject_listing = PENDING_VALIDATION.to(REJECTED)
    expire_listing = OPEN.to(EXPIRED)

    # --- Work ---
    assign_fulfiller = OPEN.to(ASSIGNED)
    start_work = ASSIGNED.to(IN_PROGRESS)
    complete_work = IN_PROGRESS.to(COMPLETED) | DISPUTED.to(COMPLETED)

    # --- Disputes ---
    raise_dispute = ASSIGNED.to(DISPUTED) | IN_PROGRESS.to(DISPUTED) | COMPLETED.to(DISPUTED)
    refund_requester = DISPUTED.to(REFUNDED)


class EscrowStateMachine(_StartsAtStatus, StateMachine):
    """Guards the escrow status of a job. Released and refunded are terminal."""

    NOT_FUNDED = State("Not funded", value="not_funded", initial=True)
    FUNDED = State("Funded", value="funded")
    RELEASED = State("Released", value="released", final=True)
    REFUNDED = State("Refunded", value="refunded", final=True)

    fund = NOT_FUNDED.to(FUNDED)
    release = FUNDED.to(RELEASED)
    refund = FUNDED.to(REFUNDED)


class PayoutStateMachine(_StartsAtStatus, StateMachine):
    """pending -> processing -> completed; any non-terminal state -> rejected."""

    PENDING = State("Pending", value="pending", initial=True)
    PROCESSING = State("Processing", value="processing")
    COMPLETED = State("Completed", value="completed", final=True)
    REJECTED = State("Rejected", value="rejected", final=True)

    start_processing = PENDING.to(PROCESSING)
    complete_payout = PROCESSING.to(COMPLETED)
    reject_payout = PENDING.to(REJECTED) | PROCESSING.to(REJECTED)


class DisputeStateMachine(_StartsAtStatus, StateMachine):
    OPEN = State("Open", value="open", initial=True)
    INVESTIGATING = State("Investigating", value="investigating")
    RESOLVED = State("Resolved", value="resolved", final=True)

    investigate = OPEN.to(INVESTIGATING)
    resolve = OPEN.to(RESOLVED) | INVESTIGATING.to(RESOLVED)


# ---------------------------------------------------------------------------
# Guard tables: target status -> event, and the reason shown on rejection
# ---------------------------------------------------------------------------
_JOB_EVENTS = {
    JobStatus.OPEN: "approve_listing",
    JobStatus.REJECTED: "reject_listing",
    JobStatus.EXPIRED: "expire_listing",
    JobStatus.ASSIGNED: "assign_fulfiller",
    JobStatus.IN_PROGRESS: "start_work",
    JobStatus.COMPLETED: "complete_work",
    JobStatus.DISPUTED: "raise_dispute",
    JobStatus.REFUNDED: "refund_requester",
}
_JOB_REASONS = {
    JobStatus.PENDING_VALIDATION: "Jobs cannot return to pending validation",
    JobStatus.OPEN: "Only jobs pending validation can be approved",
    JobStatus.REJECTED: "Only jobs pending validation can be rejected",
    JobStatus.EXPIRED: "Only open jobs can expire",
    JobStatus.ASSIGNED: "Job is no longer accepting quotes",
    JobStatus.IN_PROGRESS: "Job must be assigned before work can start",
    JobStatus.COMPLETED: "Job must be in progress before it can be marked as completed",
    JobStatus.DISPUTED: "Disputes can only be raised on active jobs",
    JobStatus.REFUNDED: "Only disputed jobs can be refunded",
}

_ESCROW_EVENTS = {
    EscrowStatus.FUNDED: "fund",
    EscrowStatus.RELEASED: "release",
    EscrowStatus.REFUNDED: "refund",
}
_ESCROW_REASONS = {
    EscrowStatus.NOT_FUNDED: "Escrow cannot return to not funded",
    EscrowStatus.FUNDED: "Escrow is already funded or has been processed",
    EscrowStatus.RELEASED: "Escrow must be in funded state to be released",
    EscrowStatus.REFUNDED: "Escrow must be in funded state to be refunded",
}

_PAYOUT_EVENTS = {
    PayoutStatus.PROCESSING: "start_processing",
    PayoutStatus.COMPLETED: "complete_payout",
    PayoutStatus.REJECTED: "reject_payout",
}
_PAYOUT_REASONS = {
    PayoutStatus.PENDING: "Payouts cannot return to pending",
    PayoutStatus.PROCESSING: "Only pending payouts can move to processing",
    PayoutStatus.COMPLETED: "Only payouts in processing can be completed",
    PayoutStatus.REJECTED: "Completed or rejected payouts cannot be rejected",
}

_DISPUTE_EVENTS = {
    DisputeStatus.INVESTIGATING: "investigate",
    DisputeStatus.RESOLVED: "resolve",
}
_DISPUTE_REASONS = {
    DisputeStatus.OPEN: "Disputes cannot be reopened",
    DisputeStatus.INVESTIGATING: "Only open disputes can move to investigating",
    DisputeStatus.RESOLVED: "Dispute has already been resolved",
}


@dataclass(frozen=True)
class TransitionCheck:
    """Outcome of a guard check. ``reason`` is set only when not allowed."""

    allowed: bool
    current: str
    target: str
    reason: str | None = None

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise InvalidStateTransitionError(self.current, self.target, self.reason or "")


def _check(
    machine_cls: type[StateMachine],
    events: Mapping[str, str],
    reasons: Mapping[str, str],
    noun: str,
    current: str,
    target: str,
) -> TransitionCheck:
    current, target = str(current), str(target)
    machine = machine_cls(current)
    if current == target:
        return TransitionCheck(False, current, target, f"{noun} is already {current}")

    event_name = events.get(target)
    if event_name is None:
        return TransitionCheck(False, current, target, reasons[target])
    try:
        getattr(machine, event_name)()
    except TransitionNotAllowed:
        return TransitionCheck(False, current, target, reasons[target])
    return TransitionCheck(True, current, target)


def can_transition(current: str, target: str) -> TransitionCheck:
    """Guard for the job status table."""
    return _check(JobStateMachine, _JOB_EVENTS, _JOB_REASONS, "Job", current, target)


def can_transition_escrow(current: str, target: str) -> TransitionCheck:
    """Guard for the escrow status table."""
    return _check(
        EscrowStateMachine, _ESCROW_EVENTS, _ESCROW_REASONS, "Escrow", current, target
    )


def can_transition_payout(current: str, target: str) -> TransitionCheck:
    return _check(
        PayoutStateMachine, _PAYOUT_EVENTS, _PAYOUT_REASONS, "Payout", current, target
    )


def can_transition_dispute(current: str, target: str) -> TransitionCheck:
    return _check(
        DisputeStateMachine, _DISPUTE_EVENTS, _DISPUTE_REASONS, "Dispute", current, target
    )


# ---------------------------------------------------------------------------
# Cross-machine rules
# ---------------------------------------------------------------------------
def check_job_transition(
    current: str,
    target: str,
    escrow_status: str,
) -> TransitionCheck:
    """Job guard plus the rule that completion needs funded escrow."""
    check = can_transition(current, target)
    if check.allowed and target == JobStatus.COMPLETED and escrow_status != EscrowStatus.FUNDED:
        return TransitionCheck(
            False,
            str(current),
            str(target),
            "Escrow must be funded before the job can be marked as completed",
        )
    return check


def check_escrow_funding(job_status: str, escrow_status: str) -> TransitionCheck:
    """Escrow may only be funded once a fulfiller is assigned."""
    if job_status != JobStatus.ASSIGNED:
        return TransitionCheck(
            False,
            str(escrow_status),
            EscrowStatus.FUNDED.value,
            "Escrow can only be funded after a fulfiller is assigned",
        )
    return can_transition_escrow(escrow_status, EscrowStatus.FUNDED)
