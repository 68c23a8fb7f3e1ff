"""Sweep Service — scheduled housekeeping triggered by the cron endpoint.

Each sweep selects candidates in one read, then handles every candidate in
its own UnitOfWork under the usual locks, re-checking eligibility after the
lock is taken. A candidate that fails is logged and skipped so the rest of
the sweep still runs.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from service_clearinghouse.domain.actor import SYSTEM_ACTOR_ID
from service_clearinghouse.domain.enums import (
    ActivityType,
    EscrowStatus,
    JobStatus,
    NotificationType,
    QuoteStatus,
)
from service_clearinghouse.domain.exceptions import ClearinghouseError
from service_clearinghouse.infrastructure.database.repositories import (
    ActivityRepository,
    JobRepository,
    QuoteRepository,
)
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.escrow_service import EscrowService
from service_clearinghouse.services.job_service import (
    apply_job_transition,
    job_status_fields,
    load_job_for_update,
)
from service_clearinghouse.services.payout_service import PayoutService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from service_clearinghouse.config import Settings
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)


@dataclass
class SweepReport:
    expired_jobs: int = 0
    expired_quotes: int = 0
    auto_released: int = 0
    expired_payouts: int = 0
    failures: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "expired_jobs": self.expired_jobs,
            "expired_quotes": self.expired_quotes,
            "auto_released": self.auto_released,
            "expired_payouts": self.expired_payouts,
            "failures": list(self.failures),
        }


class SweepService:
    def __init__(self, uow_factory: Callable[[], UnitOfWork], settings: Settings) -> None:
        self._uow_factory = uow_factory
        self._settings = settings

    async def run_all(self) -> SweepReport:
        report = SweepReport()
        report.expired_jobs = await self.expire_stale_jobs(report)
        report.expired_quotes = await self.expire_stale_quotes(report)
        report.auto_released = await self.release_stale_escrow(report)
        report.expired_payouts = await self.expire_stale_pending_payouts(report)
        logger.info("sweep.completed", **report.as_dict())
        return report

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def expire_stale_jobs(self, report: SweepReport | None = None) -> int:
        """Open jobs older than ``job_expiry_days`` -> expired; their pending quotes rejected."""
        cutoff = _days_ago(self._settings.job_expiry_days)
        async with self._uow_factory() as uow:
            job_ids = await JobRepository(uow.session).find_ids(
                JobStatus.OPEN, created_before=cutoff
            )
        return await self._each(job_ids, self._expire_job, "expire_job", report)

    async def _expire_job(self, uow: UnitOfWork, job_id: uuid.UUID) -> bool:
        job = await load_job_for_update(uow, job_id)
        if job.status != JobStatus.OPEN:
            return False

        jobs = JobRepository(uow.session)
        await apply_job_transition(jobs, job, status=JobStatus.EXPIRED)
        rejected = await QuoteRepository(uow.session).reject_pending_for_job(job.id)
        await ActivityRepository(uow.session).record(
            ActivityType.JOB_EXPIRED,
            actor=SYSTEM_ACTOR_ID,
            job_id=job.id,
            metadata={"rejected_quotes": len(rejected)},
        )

        notes = uow.notifications
        notes.status_changed("job", job.id, [job.requester_id], **job_status_fields(job))
        notes.notify(
            job.requester_id,
            NotificationType.JOB_EXPIRED,
            "Job expired",
            f'"{job.title}" expired without an accepted quote.',
            entity="job",
            entity_id=job.id,
        )
        for quote in rejected:
            notes.notify(
                quote.fulfiller_id,
                NotificationType.QUOTE_EXPIRED,
                "Quote expired",
                f'The job "{job.title}" expired.',
                entity="quote",
                entity_id=quote.id,
                job_id=str(job.id),
                status=quote.status,
            )
        return True

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def expire_stale_quotes(self, report: SweepReport | None = None) -> int:
        """Pending quotes older than ``quote_expiry_days`` -> rejected, grouped per job."""
        cutoff = _days_ago(self._settings.quote_expiry_days)
        async with self._uow_factory() as uow:
            stale = await QuoteRepository(uow.session).find_stale_pending(cutoff)
        by_job: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
        for quote in stale:
            by_job[quote.job_id].append(quote.id)

        expired = 0
        for job_id, quote_ids in by_job.items():
            try:
                async with self._uow_factory() as uow:
                    expired += await self._expire_quotes(uow, job_id, quote_ids)
            except ClearinghouseError as exc:
                _record_failure(report, "expire_quotes", job_id, exc)
        return expired

    async def _expire_quotes(
        self, uow: UnitOfWork, job_id: uuid.UUID, quote_ids: list[uuid.UUID]
    ) -> int:
        job = await load_job_for_update(uow, job_id)
        quotes = QuoteRepository(uow.session)
        expired = []
        for quote_id in quote_ids:
            quote = await quotes.get_by_id(quote_id, for_update=True)
            if quote is None or quote.status != QuoteStatus.PENDING:
                continue
            if await quotes.compare_and_set(
                quote, {"status": QuoteStatus.PENDING.value}, status=QuoteStatus.REJECTED.value
            ):
                expired.append(quote)

        if not expired:
            return 0
        await ActivityRepository(uow.session).record(
            ActivityType.QUOTES_EXPIRED,
            actor=SYSTEM_ACTOR_ID,
            job_id=job.id,
            metadata={"quote_ids": [str(q.id) for q in expired]},
        )
        for quote in expired:
            uow.notifications.notify(
                quote.fulfiller_id,
                NotificationType.QUOTE_EXPIRED,
                "Quote expired",
                f'Your quote for "{job.title}" expired.',
                entity="quote",
                entity_id=quote.id,
                job_id=str(job.id),
                status=quote.status,
            )
        return len(expired)

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    async def release_stale_escrow(self, report: SweepReport | None = None) -> int:
        """Completed jobs left unreleased for ``escrow_auto_release_days`` are released."""
        cutoff = _days_ago(self._settings.escrow_auto_release_days)
        async with self._uow_factory() as uow:
            job_ids = await JobRepository(uow.session).find_ids(
                JobStatus.COMPLETED,
                updated_before=cutoff,
                escrow_status=EscrowStatus.FUNDED,
            )

        async def release(uow: UnitOfWork, job_id: uuid.UUID) -> bool:
            return await EscrowService(uow, settings=self._settings).auto_release(job_id)

        return await self._each(job_ids, release, "auto_release", report)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def expire_stale_pending_payouts(self, report: SweepReport | None = None) -> int:
        """Pending payouts older than ``payout_pending_expiry_days`` -> rejected."""
        days = self._settings.payout_pending_expiry_days
        async with self._uow_factory() as uow:
            payout_ids = await PayoutService(uow).stale_pending_ids(days)

        async def expire(uow: UnitOfWork, payout_id: uuid.UUID) -> bool:
            return await PayoutService(uow).expire_payout(payout_id, days)

        expired = await self._each(payout_ids, expire, "expire_payout", report)
        if expired:
            logger.info("payout.expired", count=expired, older_than_days=days)
        return expired

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _each(
        self,
        item_ids: list[uuid.UUID],
        handler: Callable[[UnitOfWork, uuid.UUID], Awaitable[bool]],
        sweep: str,
        report: SweepReport | None,
    ) -> int:
        done = 0
        for item_id in item_ids:
            try:
                async with self._uow_factory() as uow:
                    if await handler(uow, item_id):
                        done += 1
            except ClearinghouseError as exc:
                _record_failure(report, sweep, item_id, exc)
        return done


def _days_ago(days: int) -> datetime:
    return datetime.now(UTC) - timedelta(days=days)


def _record_failure(
    report: SweepReport | None,
    sweep: str,
    item_id: object,
    exc: ClearinghouseError,
) -> None:
    logger.warning(
        "sweep.item_failed",
        sweep=sweep,
        item_id=str(item_id) if item_id else None,
        code=exc.code,
        error=exc.message,
    )
    if report is not None:
        report.failures.append(f"{sweep}:{item_id}:{exc.code}")
