"""Tests for the transition guard tables.

These tests verify that:
    1. The job lifecycle accepts every legal transition and nothing else.
    2. Rejections carry the reason callers return verbatim.
    3. Escrow, payout and dispute tables treat their terminal states as final.
    4. The cross-machine rules (funding, completion) hold.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from service_clearinghouse.domain.enums import (
    DisputeStatus,
    EscrowStatus,
    JobStatus,
    PayoutStatus,
)
from service_clearinghouse.domain.exceptions import InvalidStateTransitionError
from service_clearinghouse.domain.state_machine import (
    EscrowStateMachine,
    JobStateMachine,
    can_transition,
    can_transition_dispute,
    can_transition_escrow,
    can_transition_payout,
    check_escrow_funding,
    check_job_transition,
)


class TestJobLifecycle:
    def test_full_lifecycle(self) -> None:
        sm = JobStateMachine("pending_validation")
        sm.approve_listing()
        assert sm.status == "open"

        sm.assign_fulfiller()
        assert sm.status == "assigned"

        sm.start_work()
        assert sm.status == "in_progress"

        sm.complete_work()
        assert sm.status == "completed"

    def test_dispute_then_refund(self) -> None:
        sm = JobStateMachine("in_progress")
        sm.raise_dispute()
        sm.refund_requester()
        assert sm.status == "refunded"

    def test_terminal_state_blocks_everything(self) -> None:
        sm = JobStateMachine("refunded")
        with pytest.raises(TransitionNotAllowed):
            sm.raise_dispute()

    def test_unknown_status_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            JobStateMachine("archived")


class TestCanTransition:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.PENDING_VALIDATION, JobStatus.OPEN),
            (JobStatus.PENDING_VALIDATION, JobStatus.REJECTED),
            (JobStatus.OPEN, JobStatus.ASSIGNED),
            (JobStatus.OPEN, JobStatus.EXPIRED),
            (JobStatus.ASSIGNED, JobStatus.DISPUTED),
            (JobStatus.COMPLETED, JobStatus.DISPUTED),
            (JobStatus.DISPUTED, JobStatus.COMPLETED),
            (JobStatus.DISPUTED, JobStatus.REFUNDED),
        ],
    )
    def test_allowed(self, current: JobStatus, target: JobStatus) -> None:
        check = can_transition(current, target)
        assert check.allowed
        assert check.reason is None

    @pytest.mark.parametrize(
        ("current", "target", "reason"),
        [
            (JobStatus.OPEN, JobStatus.COMPLETED, "in progress before it can be marked"),
            (JobStatus.ASSIGNED, JobStatus.ASSIGNED, "Job is already assigned"),
            (JobStatus.IN_PROGRESS, JobStatus.ASSIGNED, "no longer accepting quotes"),
            (JobStatus.OPEN, JobStatus.DISPUTED, "only be raised on active jobs"),
            (JobStatus.EXPIRED, JobStatus.OPEN, "Only jobs pending validation"),
            (JobStatus.OPEN, JobStatus.PENDING_VALIDATION, "cannot return"),
        ],
    )
    def test_denied_with_reason(self, current: JobStatus, target: JobStatus, reason: str) -> None:
        check = can_transition(current, target)
        assert not check.allowed
        assert reason in (check.reason or "")

    def test_raise_if_denied(self) -> None:
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            can_transition(JobStatus.OPEN, JobStatus.IN_PROGRESS).raise_if_denied()
        assert exc_info.value.current_state == "open"
        assert exc_info.value.attempted_state == "in_progress"
        assert exc_info.value.code == "INVALID_STATE_TRANSITION"


class TestEscrowTable:
    def test_fund_then_release(self) -> None:
        sm = EscrowStateMachine("not_funded")
        sm.fund()
        sm.release()
        assert sm.status == "released"

    def test_released_is_terminal(self) -> None:
        check = can_transition_escrow(EscrowStatus.RELEASED, EscrowStatus.REFUNDED)
        assert not check.allowed
        assert check.reason == "Escrow must be in funded state to be refunded"

    def test_double_funding_denied(self) -> None:
        check = can_transition_escrow(EscrowStatus.FUNDED, EscrowStatus.FUNDED)
        assert not check.allowed


class TestCrossMachineRules:
    def test_completion_requires_funded_escrow(self) -> None:
        check = check_job_transition(
            JobStatus.IN_PROGRESS, JobStatus.COMPLETED, EscrowStatus.NOT_FUNDED
        )
        assert not check.allowed
        assert "Escrow must be funded" in (check.reason or "")

    def test_completion_with_funded_escrow(self) -> None:
        assert check_job_transition(
            JobStatus.IN_PROGRESS, JobStatus.COMPLETED, EscrowStatus.FUNDED
        ).allowed

    def test_funding_requires_assignment(self) -> None:
        check = check_escrow_funding(JobStatus.OPEN, EscrowStatus.NOT_FUNDED)
        assert not check.allowed
        assert check.reason == "Escrow can only be funded after a fulfiller is assigned"

    def test_funding_twice_denied(self) -> None:
        assert not check_escrow_funding(JobStatus.ASSIGNED, EscrowStatus.FUNDED).allowed
        assert check_escrow_funding(JobStatus.ASSIGNED, EscrowStatus.NOT_FUNDED).allowed


class TestPayoutAndDisputeTables:
    def test_payout_must_process_before_completing(self) -> None:
        check = can_transition_payout(PayoutStatus.PENDING, PayoutStatus.COMPLETED)
        assert check.reason == "Only payouts in processing can be completed"

    def test_payout_reject_from_processing(self) -> None:
        assert can_transition_payout(PayoutStatus.PROCESSING, PayoutStatus.REJECTED).allowed

    def test_completed_payout_cannot_be_rejected(self) -> None:
        assert not can_transition_payout(PayoutStatus.COMPLETED, PayoutStatus.REJECTED).allowed

    def test_dispute_resolves_from_open(self) -> None:
        assert can_transition_dispute(DisputeStatus.OPEN, DisputeStatus.RESOLVED).allowed

    def test_resolved_dispute_cannot_reopen(self) -> None:
        check = can_transition_dispute(DisputeStatus.RESOLVED, DisputeStatus.INVESTIGATING)
        assert not check.allowed
