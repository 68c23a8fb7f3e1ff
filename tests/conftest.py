"""Shared test fixtures for the Service Clearinghouse test suite.

Provides:
    - A throw-away SQLite database per test (file-backed, so concurrent
      units of work get their own connections)
    - Units of work wired to an in-memory notification channel
    - Actors for every role and a ``Marketplace`` driver that walks jobs
      through their lifecycle
    - A scriptable fake payment gateway
"""

from __future__ import annotations

import itertools
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio

from service_clearinghouse.config import Settings
from service_clearinghouse.domain.actor import Actor
from service_clearinghouse.domain.enums import Role
from service_clearinghouse.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_tables,
)
from service_clearinghouse.infrastructure.locks import KeyedLockRegistry
from service_clearinghouse.infrastructure.notification_channels import (
    InMemoryNotificationChannel,
)
from service_clearinghouse.services.escrow_service import EscrowService
from service_clearinghouse.services.job_service import JobService
from service_clearinghouse.services.payment_service import HostedSession
from service_clearinghouse.services.quote_service import QuoteService
from service_clearinghouse.services.unit_of_work import UnitOfWork

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from service_clearinghouse.domain.exceptions import PaymentGatewayError
    from service_clearinghouse.infrastructure.database.orm_models import Job, Quote

    UowFactory = Callable[[], UnitOfWork]

DESCRIPTION = "Deep clean a two-bedroom condo including kitchen and both bathrooms."
QUOTE_MESSAGE = "Five years of experience, insured, available this week."


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Development settings that ignore any local .env file."""
    return Settings(
        _env_file=None,
        app_env="development",
        commission_rate=Decimal("0.10"),
        notification_channel="memory",
        paymongo_secret_key="",
        paymongo_webhook_secret="",
        cron_secret="",
    )


# ---------------------------------------------------------------------------
# Database & units of work
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/clearinghouse.db")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def channel() -> InMemoryNotificationChannel:
    return InMemoryNotificationChannel()


@pytest.fixture
def locks() -> KeyedLockRegistry:
    return KeyedLockRegistry()


@pytest.fixture
def uow_factory(
    session_factory: async_sessionmaker[AsyncSession],
    locks: KeyedLockRegistry,
    channel: InMemoryNotificationChannel,
) -> UowFactory:
    def factory() -> UnitOfWork:
        return UnitOfWork(session_factory, locks, channel)

    return factory


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def requester() -> Actor:
    return Actor("requester-ana", Role.REQUESTER)


@pytest.fixture
def other_requester() -> Actor:
    return Actor("requester-bo", Role.REQUESTER)


@pytest.fixture
def fulfiller() -> Actor:
    return Actor("fulfiller-cy", Role.FULFILLER)


@pytest.fixture
def other_fulfiller() -> Actor:
    return Actor("fulfiller-di", Role.FULFILLER)


@pytest.fixture
def admin() -> Actor:
    return Actor("admin-ed", Role.ADMIN)


# ---------------------------------------------------------------------------
# Lifecycle driver
# ---------------------------------------------------------------------------


class Marketplace:
    """Walks jobs through the lifecycle, one unit of work per step."""

    def __init__(
        self,
        uow_factory: UowFactory,
        settings: Settings,
        requester: Actor,
        fulfiller: Actor,
        admin: Actor,
    ) -> None:
        self.uow_factory = uow_factory
        self.settings = settings
        self.requester = requester
        self.fulfiller = fulfiller
        self.admin = admin

    async def post_job(
        self,
        budget: str = "1000.00",
        category: str = "cleaning",
        requester: Actor | None = None,
    ) -> Job:
        async with self.uow_factory() as uow:
            return await JobService(uow).create_job(
                requester or self.requester,
                title="Deep clean condo",
                description=DESCRIPTION,
                category=category,
                budget=Decimal(budget),
            )

    async def open_job(self, budget: str = "1000.00", category: str = "cleaning") -> Job:
        job = await self.post_job(budget, category)
        async with self.uow_factory() as uow:
            return await JobService(uow).approve_job(self.admin, job.id)

    async def quote(
        self,
        job_id: uuid.UUID,
        amount: str = "900.00",
        fulfiller: Actor | None = None,
    ) -> Quote:
        async with self.uow_factory() as uow:
            return await QuoteService(uow).submit_quote(
                fulfiller or self.fulfiller,
                job_id,
                Decimal(amount),
                timeline="2 days",
                message=QUOTE_MESSAGE,
            )

    async def assigned_job(self, amount: str = "900.00") -> Job:
        job = await self.open_job()
        quote = await self.quote(job.id, amount)
        async with self.uow_factory() as uow:
            _, job = await QuoteService(uow).accept_quote(self.requester, quote.id)
        return job

    async def funded_job(self, amount: str = "900.00") -> Job:
        job = await self.assigned_job(amount)
        async with self.uow_factory() as uow:
            await EscrowService(uow, settings=self.settings).fund_escrow(self.requester, job.id)
        return await self.get(job.id)

    async def in_progress_job(self, amount: str = "900.00") -> Job:
        job = await self.funded_job(amount)
        async with self.uow_factory() as uow:
            return await EscrowService(uow, settings=self.settings).start_job(
                self.fulfiller, job.id
            )

    async def completed_job(self, amount: str = "900.00") -> Job:
        job = await self.in_progress_job(amount)
        async with self.uow_factory() as uow:
            return await EscrowService(uow, settings=self.settings).mark_complete(
                self.fulfiller, job.id
            )

    async def released_job(self, amount: str = "900.00") -> Job:
        job = await self.completed_job(amount)
        async with self.uow_factory() as uow:
            return await EscrowService(uow, settings=self.settings).release_escrow(
                self.requester, job.id
            )

    async def get(self, job_id: uuid.UUID) -> Job:
        async with self.uow_factory() as uow:
            return await JobService(uow).get_job(self.admin, job_id)


@pytest.fixture
def market(
    uow_factory: UowFactory,
    settings: Settings,
    requester: Actor,
    fulfiller: Actor,
    admin: Actor,
) -> Marketplace:
    return Marketplace(uow_factory, settings, requester, fulfiller, admin)


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-process stand-in for the hosted checkout gateway."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.created: list[tuple[str, Decimal]] = []
        self.paid: set[str] = set()
        self.fail_with: PaymentGatewayError | None = None

    async def create_hosted_session(
        self,
        amount: Decimal,
        job_ref: str,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> HostedSession:
        if self.fail_with is not None:
            raise self.fail_with
        session_ref = f"cs_test_{next(self._ids)}"
        self.created.append((session_ref, amount))
        return HostedSession(session_ref, f"https://checkout.test/{session_ref}")

    async def confirm_session(self, session_ref: str) -> HostedSession:
        if session_ref in self.paid:
            return HostedSession(
                session_ref,
                None,
                status="paid",
                payment_ref=f"pay_{session_ref}",
                payment_method="gcash",
            )
        return HostedSession(session_ref, None)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return signature == "valid-signature"


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()
