"""Payout Service — fulfillers withdraw their settled earnings.

The available balance is never stored. It is recomputed on every call:

    available = sum(net of completed settlements paid to the fulfiller)
              - sum(amount of the fulfiller's payouts that were not rejected)

Requests for the same fulfiller are serialized on ``payouts:<fulfiller>``
so that two concurrent requests cannot both draw the same balance.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from service_clearinghouse.domain.actor import SYSTEM_ACTOR_ID
from service_clearinghouse.domain.commission import to_money
from service_clearinghouse.domain.enums import (
    ActivityType,
    NotificationType,
    PayoutStatus,
    Role,
)
from service_clearinghouse.domain.exceptions import (
    NotFoundError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.domain.state_machine import can_transition_payout
from service_clearinghouse.infrastructure.database.orm_models import PayoutRequest
from service_clearinghouse.infrastructure.database.repositories import (
    ActivityRepository,
    PayoutRepository,
    SettlementRepository,
)
from service_clearinghouse.infrastructure.locks import payout_lock_key
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.job_service import MAX_PAGE_SIZE
from service_clearinghouse.services.listing import PAYOUT_VISIBILITY, visibility_clauses

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

_STATUS_MESSAGES = {
    PayoutStatus.PROCESSING: ("Payout processing", "Your payout of {amount} is being processed."),
    PayoutStatus.COMPLETED: ("Payout completed", "Your payout of {amount} has been sent."),
    PayoutStatus.REJECTED: ("Payout rejected", "Your payout of {amount} was rejected."),
}


class PayoutService:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow
        self._payouts = PayoutRepository(uow.session)
        self._settlements = SettlementRepository(uow.session)
        self._activity = ActivityRepository(uow.session)

    async def available_balance(self, fulfiller_id: str) -> Decimal:
        _, _, earned = await self._settlements.completed_totals_for_payee(fulfiller_id)
        reserved = await self._payouts.reserved_for_fulfiller(fulfiller_id)
        return max(to_money(0), to_money(earned - reserved))

    async def request_payout(
        self,
        actor: Actor,
        amount: Decimal,
        bank_name: str,
        account_number: str,
        account_name: str,
    ) -> PayoutRequest:
        """Fulfiller withdraws up to their available balance."""
        actor.require_role(Role.FULFILLER, message="Only fulfillers can request payouts")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        bank_name, account_number, account_name = (
            (bank_name or "").strip(),
            (account_number or "").strip(),
            (account_name or "").strip(),
        )
        if not (bank_name and account_number and account_name):
            raise ValidationError("Bank name, account number and account name are required")
        amount = to_money(amount)

        await self._uow.lock(payout_lock_key(actor.subject_id))
        available = await self.available_balance(actor.subject_id)
        if amount > available:
            raise UnprocessableError(
                f"Requested amount exceeds your available balance of {available}"
            )

        payout = await self._payouts.create(
            PayoutRequest(
                fulfiller_id=actor.subject_id,
                amount=amount,
                bank_name=bank_name,
                account_number=account_number,
                account_name=account_name,
                status=PayoutStatus.PENDING.value,
            )
        )
        await self._activity.record(
            ActivityType.PAYOUT_REQUESTED,
            actor=actor.subject_id,
            metadata={"payout_id": str(payout.id), "amount": str(amount)},
        )
        self._uow.notifications.notify(
            actor.subject_id,
            NotificationType.PAYOUT_REQUESTED,
            "Payout requested",
            f"Your payout request of {amount} was received.",
            entity="payout",
            entity_id=payout.id,
            status=payout.status,
        )
        logger.info(
            "payout.requested",
            payout_id=str(payout.id),
            fulfiller_id=actor.subject_id,
            amount=amount,
            remaining=available - amount,
        )
        return payout

    async def update_payout_status(
        self,
        actor: Actor,
        payout_id: uuid.UUID,
        status: PayoutStatus,
        notes: str | None = None,
    ) -> PayoutRequest:
        """Admin moves a payout along pending -> processing -> completed, or rejects it."""
        actor.require_role(Role.ADMIN, message="Only admins can update payouts")
        payout = await self._payouts.get_by_id(payout_id)
        if payout is None:
            raise NotFoundError("Payout", payout_id)
        await self._uow.lock(payout_lock_key(payout.fulfiller_id))
        payout = await self._payouts.get_by_id(payout_id, for_update=True)
        if payout is None:
            raise NotFoundError("Payout", payout_id)

        await self._set_status(payout, status, notes, actor=actor.subject_id)
        return payout

    async def stale_pending_ids(self, older_than_days: int) -> list[uuid.UUID]:
        """Pending payouts created more than ``older_than_days`` ago, oldest first."""
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        return [p.id for p in await self._payouts.find_stale_pending(cutoff)]

    async def expire_payout(self, payout_id: uuid.UUID, older_than_days: int) -> bool:
        """Reject one stale pending payout, releasing its reservation.

        Returns False when the payout is gone, no longer pending, or not yet
        older than the threshold.
        """
        payout = await self._payouts.get_by_id(payout_id)
        if payout is None:
            return False
        await self._uow.lock(payout_lock_key(payout.fulfiller_id))
        payout = await self._payouts.get_by_id(payout_id, for_update=True)
        if payout is None or payout.status != PayoutStatus.PENDING:
            return False
        created_at = payout.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        if created_at >= datetime.now(UTC) - timedelta(days=older_than_days):
            return False

        await self._set_status(
            payout,
            PayoutStatus.REJECTED,
            f"Expired after {older_than_days} days pending",
            actor=SYSTEM_ACTOR_ID,
            activity=ActivityType.PAYOUT_EXPIRED,
        )
        return True

    async def list_payouts(
        self,
        actor: Actor,
        status: PayoutStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PayoutRequest], int, Decimal | None]:
        """A page of visible payouts, their total, and the fulfiller's balance (None for admins)."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        clauses = visibility_clauses(PAYOUT_VISIBILITY, actor)
        if status is not None:
            clauses.append(PayoutRequest.status == status.value)
        payouts, total = await self._payouts.search(clauses, page, limit)
        balance = None
        if actor.role is Role.FULFILLER:
            balance = await self.available_balance(actor.subject_id)
        return payouts, total, balance

    async def _set_status(
        self,
        payout: PayoutRequest,
        status: PayoutStatus,
        notes: str | None,
        *,
        actor: str,
        activity: ActivityType = ActivityType.PAYOUT_UPDATED,
    ) -> None:
        can_transition_payout(payout.status, status).raise_if_denied()
        previous = payout.status

        values: dict[str, object] = {"status": status.value}
        if notes is not None:
            values["notes"] = notes
        if status in (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED):
            values["processed_at"] = datetime.now(UTC)
        if not await self._payouts.compare_and_set(payout, {"status": previous}, **values):
            raise UnprocessableError(
                "Payout changed while this operation was running, please retry",
                code="CONCURRENT_MODIFICATION",
            )

        await self._activity.record(
            activity,
            actor=actor,
            metadata={
                "payout_id": str(payout.id),
                "from": previous,
                "to": payout.status,
                "notes": notes,
            },
        )
        title, template = _STATUS_MESSAGES[status]
        message = template.format(amount=payout.amount)
        if notes:
            message = f"{message} {notes}"
        self._uow.notifications.notify(
            payout.fulfiller_id,
            NotificationType.PAYOUT_STATUS_UPDATE,
            title,
            message,
            entity="payout",
            entity_id=payout.id,
            status=payout.status,
        )
        logger.info(
            "payout.status_changed",
            payout_id=str(payout.id),
            previous=previous,
            status=payout.status,
            actor=actor,
        )
