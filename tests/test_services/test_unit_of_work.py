"""Tests for unit-of-work commit semantics, keyed locks and notification delivery."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import pytest

from service_clearinghouse.domain.enums import JobStatus, NotificationType
from service_clearinghouse.infrastructure.locks import KeyedLockRegistry, job_lock_key
from service_clearinghouse.infrastructure.notification_channels import (
    InMemoryNotificationChannel,
    RedisNotificationChannel,
)
from service_clearinghouse.services.job_service import JobService
from service_clearinghouse.services.notification_service import NotificationFanout
from service_clearinghouse.services.unit_of_work import UnitOfWork

if TYPE_CHECKING:
    from conftest import Marketplace
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class _BrokenChannel:
    name = "broken"

    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None:
        raise ConnectionError("channel down")


class _RecordingRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


def _stage(uow: UnitOfWork, recipient: str = "requester-ana") -> None:
    uow.notifications.notify(
        recipient,
        NotificationType.JOB_APPROVED,
        "Job approved",
        "Your job is live.",
        entity="job",
        entity_id="job-1",
        status=JobStatus.OPEN.value,
    )


class TestUnitOfWork:
    @pytest.mark.asyncio
    async def test_commit_publishes_staged_events(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLockRegistry,
        channel: InMemoryNotificationChannel,
    ) -> None:
        async with UnitOfWork(session_factory, locks, channel) as uow:
            _stage(uow)
            assert not channel.delivered

        payloads = channel.for_recipient("requester-ana")
        assert payloads == [
            {
                "recipient": "requester-ana",
                "entity": "job",
                "id": "job-1",
                "status": "open",
                "type": "job_approved",
                "title": "Job approved",
                "message": "Your job is live.",
            }
        ]

    @pytest.mark.asyncio
    async def test_rollback_discards_events(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLockRegistry,
        channel: InMemoryNotificationChannel,
    ) -> None:
        with pytest.raises(RuntimeError):
            async with UnitOfWork(session_factory, locks, channel) as uow:
                _stage(uow)
                raise RuntimeError("boom")
        assert not channel.delivered

    @pytest.mark.asyncio
    async def test_failed_delivery_keeps_committed_work(
        self,
        market: Marketplace,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLockRegistry,
    ) -> None:
        job = await market.post_job()

        async with UnitOfWork(session_factory, locks, _BrokenChannel()) as uow:
            await JobService(uow).approve_job(market.admin, job.id)

        assert (await market.get(job.id)).status == JobStatus.OPEN

    @pytest.mark.asyncio
    async def test_locks_released_on_exit(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLockRegistry,
        channel: InMemoryNotificationChannel,
    ) -> None:
        key = job_lock_key("job-1")
        with pytest.raises(ValueError):
            async with UnitOfWork(session_factory, locks, channel) as uow:
                await uow.lock_job("job-1")
                await uow.lock(key)
                assert locks.is_locked(key)
                raise ValueError("abort")
        assert not locks.is_locked(key)


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_serializes_same_key(self) -> None:
        registry = KeyedLockRegistry()
        order: list[str] = []

        async def worker(name: str) -> None:
            await registry.acquire("job:1")
            try:
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")
            finally:
                registry.release("job:1")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert registry._locks == {}

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_block(self) -> None:
        registry = KeyedLockRegistry()
        await registry.acquire("job:1")
        await asyncio.wait_for(registry.acquire("job:2"), timeout=1)
        assert registry.is_locked("job:1") and registry.is_locked("job:2")
        registry.release("job:1")
        registry.release("job:2")
        assert not registry.is_locked("job:1")


class TestChannels:
    @pytest.mark.asyncio
    async def test_subscribers_receive_live_events(self) -> None:
        channel = InMemoryNotificationChannel()
        queue = channel.subscribe("fulfiller-cy")

        fanout = NotificationFanout(channel)
        fanout.status_changed("job", "job-1", ["fulfiller-cy", None, "fulfiller-cy"], status="x")
        assert await fanout.publish() == 1

        assert queue.get_nowait()["status"] == "x"
        channel.unsubscribe("fulfiller-cy", queue)
        assert channel._subscribers == {}

    @pytest.mark.asyncio
    async def test_redis_channel_publishes_json(self) -> None:
        client = _RecordingRedis()
        channel = RedisNotificationChannel(client)  # type: ignore[arg-type]

        await channel.deliver("requester-ana", {"entity": "job", "id": "job-1"})

        topic, message = client.published[0]
        assert topic == "notifications:requester-ana"
        assert json.loads(message) == {"entity": "job", "id": "job-1"}

    @pytest.mark.asyncio
    async def test_history_keeps_only_recent_events(self) -> None:
        channel = InMemoryNotificationChannel(history_size=3)
        for n in range(5):
            await channel.deliver("requester-ana", {"id": f"job-{n}"})

        assert len(channel.delivered) == 3
        assert [p["id"] for p in channel.for_recipient("requester-ana")] == [
            "job-2",
            "job-3",
            "job-4",
        ]
