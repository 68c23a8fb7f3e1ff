"""Settlement ledger — money held for and paid to fulfillers.

Records are appended when escrow is funded (``pending``) and only their
status changes afterwards: ``completed`` when escrow is released to the
fulfiller, ``refunded`` when it goes back to the requester. Nothing is ever
deleted, so the records are an audit trail of every escrowed amount.

On release the ledger derives what to do from the job's escrow, not from a
flag: a pending record is completed if one exists, otherwise a completed one
is written from the escrowed amount. Either way exactly one completed record
exists for the job afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from service_clearinghouse.domain.commission import (
    DEFAULT_COMMISSION_RATE,
    calculate_commission,
)
from service_clearinghouse.domain.enums import Role, TransactionStatus
from service_clearinghouse.infrastructure.database.orm_models import SettlementTransaction
from service_clearinghouse.infrastructure.database.repositories import SettlementRepository
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.listing import TRANSACTION_VISIBILITY, visibility_clauses

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.database.orm_models import Job

logger = get_logger(__name__)


@dataclass(frozen=True)
class EarningsSummary:
    fulfiller_id: str
    gross: Decimal
    commission: Decimal
    net: Decimal


class SettlementLedger:
    """Appends and settles SettlementTransaction rows for jobs."""

    def __init__(
        self,
        session: AsyncSession,
        commission_rate: Decimal = DEFAULT_COMMISSION_RATE,
    ) -> None:
        self._repo = SettlementRepository(session)
        self._rate = commission_rate

    def _build(
        self,
        job: Job,
        amount: Decimal,
        status: TransactionStatus,
    ) -> SettlementTransaction:
        if job.fulfiller_id is None:
            raise ValueError(f"Job {job.id} has no fulfiller to settle with")
        breakdown = calculate_commission(amount, self._rate)
        return SettlementTransaction(
            job_id=job.id,
            payer_id=job.requester_id,
            payee_id=job.fulfiller_id,
            gross_amount=breakdown.gross,
            commission_amount=breakdown.commission,
            net_amount=breakdown.net,
            status=status.value,
        )

    async def record_funding(self, job: Job, amount: Decimal) -> SettlementTransaction:
        """Hold the funded amount as a pending transaction."""
        txn = await self._repo.append(self._build(job, amount, TransactionStatus.PENDING))
        logger.info(
            "settlement.pending_recorded",
            job_id=str(job.id),
            gross=txn.gross_amount,
            commission=txn.commission_amount,
        )
        return txn

    async def settle_release(self, job: Job, amount: Decimal) -> SettlementTransaction:
        """Complete the job's held transaction (or write one if none is held)."""
        completed = await self._repo.list_for_job(job.id, [TransactionStatus.COMPLETED])
        if completed:
            return completed[0]

        flipped = await self._repo.set_status_for_job(
            job.id, [TransactionStatus.PENDING], TransactionStatus.COMPLETED
        )
        if flipped:
            txn = (await self._repo.list_for_job(job.id, [TransactionStatus.COMPLETED]))[0]
        else:
            txn = await self._repo.append(self._build(job, amount, TransactionStatus.COMPLETED))
            logger.warning(
                "settlement.pending_missing",
                job_id=str(job.id),
                recreated_gross=txn.gross_amount,
            )
        logger.info("settlement.completed", job_id=str(job.id), net=txn.net_amount)
        return txn

    async def settle_partial(self, job: Job, amount: Decimal) -> SettlementTransaction:
        """Pay out ``amount`` only; the held full amount is marked refunded."""
        superseded = await self._repo.set_status_for_job(
            job.id, [TransactionStatus.PENDING], TransactionStatus.REFUNDED
        )
        txn = await self._repo.append(self._build(job, amount, TransactionStatus.COMPLETED))
        logger.info(
            "settlement.partial_completed",
            job_id=str(job.id),
            gross=txn.gross_amount,
            superseded=superseded,
        )
        return txn

    async def refund(self, job: Job) -> int:
        """Refund every transaction of the job that has not been refunded yet."""
        count = await self._repo.set_status_for_job(
            job.id,
            [TransactionStatus.PENDING, TransactionStatus.COMPLETED],
            TransactionStatus.REFUNDED,
        )
        logger.info("settlement.refunded", job_id=str(job.id), count=count)
        return count

    async def for_job(self, job: Job) -> list[SettlementTransaction]:
        return await self._repo.list_for_job(job.id)

    async def list_for_actor(
        self,
        actor: Actor,
        status: TransactionStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[SettlementTransaction], int]:
        clauses = visibility_clauses(TRANSACTION_VISIBILITY, actor)
        if status is not None:
            clauses.append(SettlementTransaction.status == status.value)
        return await self._repo.search(clauses, page, limit)

    async def earnings(self, actor: Actor) -> EarningsSummary:
        actor.require_role(Role.FULFILLER)
        gross, commission, net = await self._repo.completed_totals_for_payee(actor.subject_id)
        return EarningsSummary(
            fulfiller_id=actor.subject_id, gross=gross, commission=commission, net=net
        )
