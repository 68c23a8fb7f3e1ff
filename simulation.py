#!/usr/bin/env python3
"""Service Clearinghouse — End-to-End Simulation.

Drives the marketplace through four scenarios with RequesterBot,
FulfillerBot and AdminBot:

    Scenario 1: Happy Path
        - Requester posts a job, admin approves it
        - Two fulfillers quote, requester accepts one (the other is rejected)
        - Escrow funded -> work started -> completed -> escrow released
        - Requester reviews the fulfiller
        - Fulfiller withdraws the net amount

    Scenario 2: Dispute Refund
        - Job assigned and funded, fulfiller starts but the work is disputed
        - Admin resolves the dispute with a refund

    Scenario 3: Partial Release and Admin Override
        - Requester releases only part of a completed job's escrow
        - A second job is force-refunded by an admin

    Scenario 4: Racing Accepts
        - Two accepts on the same job race; exactly one wins

Usage:
    # Against PostgreSQL at DATABASE_URL:
    python simulation.py

    # Against a temporary SQLite file:
    python simulation.py --sqlite

    # Run a specific scenario:
    python simulation.py --sqlite --scenario 1
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from service_clearinghouse.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from service_clearinghouse.domain.actor import Actor  # noqa: E402
from service_clearinghouse.domain.enums import (  # noqa: E402
    DisputeStatus,
    EscrowAction,
    PayoutStatus,
    Role,
)
from service_clearinghouse.domain.exceptions import ClearinghouseError  # noqa: E402
from service_clearinghouse.infrastructure.locks import KeyedLockRegistry  # noqa: E402
from service_clearinghouse.infrastructure.notification_channels import (  # noqa: E402
    InMemoryNotificationChannel,
)
from service_clearinghouse.services.dispute_service import DisputeService  # noqa: E402
from service_clearinghouse.services.escrow_service import EscrowService  # noqa: E402
from service_clearinghouse.services.job_service import JobService  # noqa: E402
from service_clearinghouse.services.payout_service import PayoutService  # noqa: E402
from service_clearinghouse.services.quote_service import QuoteService  # noqa: E402
from service_clearinghouse.services.review_service import ReviewService  # noqa: E402
from service_clearinghouse.services.unit_of_work import UnitOfWork  # noqa: E402

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Module-level state
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_locks = KeyedLockRegistry()
_channel = InMemoryNotificationChannel()
_tmpdir: tempfile.TemporaryDirectory | None = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------


async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _engine, _session_factory, _tmpdir
    from service_clearinghouse.infrastructure.database.engine import (
        build_engine,
        build_session_factory,
        create_tables,
        get_engine,
    )

    if use_sqlite:
        # A throw-away file: concurrent units of work need their own connections
        _tmpdir = tempfile.TemporaryDirectory(prefix="clearinghouse-sim-")
        _engine = build_engine(f"sqlite+aiosqlite:///{_tmpdir.name}/simulation.db")
    else:
        _engine = get_engine()

    await create_tables(_engine)
    _session_factory = build_session_factory(_engine)
    logger.info("database.initialized", sqlite=use_sqlite)


def uow() -> UnitOfWork:
    if _session_factory is None:
        raise RuntimeError("Call init_database() first")
    return UnitOfWork(_session_factory, _locks, _channel)


async def shutdown_database() -> None:
    """Close database connections."""
    global _engine, _session_factory, _tmpdir
    if _engine is not None:
        await _engine.dispose()
    if _tmpdir is not None:
        _tmpdir.cleanup()
    _engine = None
    _session_factory = None
    _tmpdir = None


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------


@dataclass
class RequesterBot:
    """Simulated requester who posts, funds and settles jobs."""

    subject_id: str = "requester-ana"

    @property
    def actor(self) -> Actor:
        return Actor(self.subject_id, Role.REQUESTER)

    async def post_job(self, title: str, budget: str, category: str = "cleaning") -> uuid.UUID:
        async with uow() as work:
            job = await JobService(work).create_job(
                self.actor,
                title=title,
                description=f"{title}. Bring your own supplies; two-bedroom condo unit.",
                category=category,
                budget=Decimal(budget),
            )
        logger.info("🔵 REQUESTER: Job posted", job_id=str(job.id), risk=job.risk_score)
        return job.id

    async def accept(self, quote_id: uuid.UUID) -> None:
        async with uow() as work:
            quote, job = await QuoteService(work).accept_quote(self.actor, quote_id)
        logger.info("🔵 REQUESTER: Quote accepted", job_id=str(job.id), amount=quote.amount)

    async def fund(self, job_id: uuid.UUID) -> None:
        async with uow() as work:
            result = await EscrowService(work).fund_escrow(self.actor, job_id)
        logger.info("🔵 REQUESTER: Escrow funded", job_id=str(job_id), amount=result.amount)

    async def release(self, job_id: uuid.UUID) -> None:
        async with uow() as work:
            await EscrowService(work).release_escrow(self.actor, job_id)
        logger.info("🔵 REQUESTER: Escrow released", job_id=str(job_id))

    async def partial_release(self, job_id: uuid.UUID, amount: str) -> None:
        async with uow() as work:
            await EscrowService(work).partial_release(self.actor, job_id, Decimal(amount))
        logger.info("🔵 REQUESTER: Escrow partially released", job_id=str(job_id), amount=amount)

    async def dispute(self, job_id: uuid.UUID, reason: str) -> uuid.UUID:
        async with uow() as work:
            dispute = await DisputeService(work).open_dispute(self.actor, job_id, reason)
        logger.info("🔵 REQUESTER: Dispute opened", dispute_id=str(dispute.id))
        return dispute.id

    async def review(self, job_id: uuid.UUID, rating: int, feedback: str) -> None:
        async with uow() as work:
            await ReviewService(work).submit_review(self.actor, job_id, rating, feedback)
        logger.info("🔵 REQUESTER: Review submitted", job_id=str(job_id), rating=rating)


@dataclass
class FulfillerBot:
    """Simulated fulfiller who quotes, works and withdraws."""

    subject_id: str = "fulfiller-ben"

    @property
    def actor(self) -> Actor:
        return Actor(self.subject_id, Role.FULFILLER)

    async def quote(self, job_id: uuid.UUID, amount: str) -> uuid.UUID:
        async with uow() as work:
            quote = await QuoteService(work).submit_quote(
                self.actor,
                job_id,
                Decimal(amount),
                timeline="1 day",
                message="Experienced, insured and available this week.",
            )
        logger.info("🟢 FULFILLER: Quote submitted", fulfiller=self.subject_id, amount=amount)
        return quote.id

    async def start(self, job_id: uuid.UUID) -> None:
        async with uow() as work:
            await EscrowService(work).start_job(self.actor, job_id, ["https://img/before.jpg"])
        logger.info("🟢 FULFILLER: Work started", job_id=str(job_id))

    async def complete(self, job_id: uuid.UUID) -> None:
        async with uow() as work:
            await EscrowService(work).mark_complete(self.actor, job_id, ["https://img/after.jpg"])
        logger.info("🟢 FULFILLER: Work completed", job_id=str(job_id))

    async def withdraw_all(self) -> Decimal:
        async with uow() as work:
            payouts = PayoutService(work)
            balance = await payouts.available_balance(self.subject_id)
            if balance > 0:
                await payouts.request_payout(
                    self.actor, balance, "GCash", "09170000000", self.subject_id
                )
        logger.info("🟢 FULFILLER: Payout requested", amount=balance)
        return balance


@dataclass
class AdminBot:
    subject_id: str = "admin-cy"

    @property
    def actor(self) -> Actor:
        return Actor(self.subject_id, Role.ADMIN)

    async def approve(self, job_id: uuid.UUID) -> None:
        async with uow() as work:
            await JobService(work).approve_job(self.actor, job_id)
        logger.info("🟣 ADMIN: Job approved", job_id=str(job_id))

    async def resolve(self, dispute_id: uuid.UUID, action: EscrowAction) -> None:
        async with uow() as work:
            await DisputeService(work).resolve_dispute(
                self.actor,
                dispute_id,
                DisputeStatus.RESOLVED,
                notes="Reviewed photos from both parties.",
                escrow_action=action,
            )
        logger.info("🟣 ADMIN: Dispute resolved", dispute_id=str(dispute_id), action=action)

    async def override(self, job_id: uuid.UUID, action: EscrowAction, reason: str) -> None:
        async with uow() as work:
            await EscrowService(work).admin_override_escrow(self.actor, job_id, action, reason)
        logger.info("🟣 ADMIN: Escrow overridden", job_id=str(job_id), action=action)

    async def complete_payouts(self, fulfiller_id: str) -> None:
        async with uow() as work:
            payouts, _, _ = await PayoutService(work).list_payouts(self.actor)
        for payout in payouts:
            if payout.fulfiller_id != fulfiller_id:
                continue
            for status in (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED):
                async with uow() as work:
                    await PayoutService(work).update_payout_status(self.actor, payout.id, status)
        logger.info("🟣 ADMIN: Payouts completed", fulfiller=fulfiller_id)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------


def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_job(job_id: uuid.UUID) -> None:
    """Print a job's state, settlements and audit trail."""
    from service_clearinghouse.services.settlement_service import SettlementLedger

    admin = AdminBot().actor
    async with uow() as work:
        jobs = JobService(work)
        job = await jobs.get_job(admin, job_id)
        events = await jobs.get_activity(admin, job_id)
        txns = await SettlementLedger(work.session).for_job(job)

    print(f"  Job: {job.title}")
    print(f"  Status: {job.status} | Escrow: {job.escrow_status}")
    for txn in txns:
        print(
            f"  💰 {txn.status}: gross {txn.gross_amount} = "
            f"commission {txn.commission_amount} + net {txn.net_amount}"
        )
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        print(f"    {i}. [{evt.event_type}] by {evt.actor}")
    print()


async def assigned_and_funded(
    requester: RequesterBot, fulfiller: FulfillerBot, title: str, budget: str
) -> uuid.UUID:
    job_id = await requester.post_job(title, budget)
    await AdminBot().approve(job_id)
    quote_id = await fulfiller.quote(job_id, budget)
    await requester.accept(quote_id)
    await requester.fund(job_id)
    return job_id


# ===========================================================================
# Scenarios
# ===========================================================================


async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path — quote, escrow, release, payout")
    requester, admin = RequesterBot(), AdminBot()
    ben, cara = FulfillerBot("fulfiller-ben"), FulfillerBot("fulfiller-cara")

    section("Step 1: Post and approve")
    job_id = await requester.post_job("Deep clean two-bedroom condo", "2000.00")
    await admin.approve(job_id)

    section("Step 2: Quotes")
    winning = await ben.quote(job_id, "1800.00")
    await cara.quote(job_id, "1950.00")
    await requester.accept(winning)

    section("Step 3: Escrow and work")
    await requester.fund(job_id)
    await ben.start(job_id)
    await ben.complete(job_id)
    await requester.release(job_id)
    await requester.review(job_id, 5, "Spotless work, finished ahead of schedule.")

    section("Step 4: Payout")
    amount = await ben.withdraw_all()
    await admin.complete_payouts(ben.subject_id)
    print(f"  🏦 Withdrawn: {amount}")

    await print_job(job_id)


async def scenario_2_dispute_refund() -> None:
    banner("SCENARIO 2: Dispute — admin refunds the requester")
    requester, fulfiller = RequesterBot("requester-dee"), FulfillerBot("fulfiller-eli")
    job_id = await assigned_and_funded(requester, fulfiller, "Repaint bedroom walls", "3000.00")
    await fulfiller.start(job_id)

    dispute_id = await requester.dispute(
        job_id, "Fulfiller left after one hour and the walls are half painted."
    )
    await AdminBot().resolve(dispute_id, EscrowAction.REFUND)
    await print_job(job_id)


async def scenario_3_partial_and_override() -> None:
    banner("SCENARIO 3: Partial release and admin override")
    requester, fulfiller = RequesterBot("requester-fay"), FulfillerBot("fulfiller-gus")

    section("Partial release")
    job_id = await assigned_and_funded(requester, fulfiller, "Assemble office furniture", "1000")
    await fulfiller.start(job_id)
    await fulfiller.complete(job_id)
    await requester.partial_release(job_id, "600.00")
    await print_job(job_id)

    section("Admin override refund")
    other_id = await assigned_and_funded(requester, fulfiller, "Garden cleanup and mowing", "800")
    await AdminBot().override(other_id, EscrowAction.REFUND, "Fulfiller unreachable")
    await print_job(other_id)


async def scenario_4_racing_accepts() -> None:
    banner("SCENARIO 4: Two accepts race on one job")
    requester = RequesterBot("requester-hal")
    job_id = await requester.post_job("Move boxes to storage unit", "1200")
    await AdminBot().approve(job_id)
    first = await FulfillerBot("fulfiller-ivy").quote(job_id, "1100")
    second = await FulfillerBot("fulfiller-jon").quote(job_id, "1150")

    results = await asyncio.gather(
        requester.accept(first), requester.accept(second), return_exceptions=True
    )
    for outcome in results:
        if isinstance(outcome, ClearinghouseError):
            print(f"  ❌ Rejected: {outcome.message}")
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            print("  ✅ Accepted")
    await print_job(job_id)


# ===========================================================================
# Main
# ===========================================================================

SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_dispute_refund,
    3: scenario_3_partial_and_override,
    4: scenario_4_racing_accepts,
}


async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    await init_database(use_sqlite=use_sqlite)
    try:
        print("\n" + "🚀" * 35)
        print("  THE SERVICE CLEARINGHOUSE — SIMULATION")
        print(f"  Database: {'SQLite (temporary file)' if use_sqlite else 'PostgreSQL'}")
        print("🚀" * 35 + "\n")

        if scenario and scenario not in SCENARIOS:
            print(f"Unknown scenario {scenario}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        for num, fn in SCENARIOS.items():
            if scenario in (0, num):
                await fn()

        print(f"\n  📨 Notifications delivered: {len(_channel.delivered)}")
        print("\n" + "=" * 70)
        print("  ✅ SIMULATION COMPLETED")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Service Clearinghouse Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
