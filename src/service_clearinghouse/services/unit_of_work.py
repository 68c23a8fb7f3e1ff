"""One operation = one UnitOfWork.

A unit of work owns:
    - one AsyncSession transaction (committed on success, rolled back on error);
    - the keyed locks taken during the operation, held until the transaction
      has committed or rolled back;
    - the notifications staged during the operation, published only after a
      successful commit.

Usage:
    async with new_unit_of_work() as uow:
        await uow.lock_job(job_id)
        job = await JobRepository(uow.session).get_by_id(job_id, for_update=True)
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from service_clearinghouse.infrastructure.locks import (
    KeyedLockRegistry,
    default_lock_registry,
    job_lock_key,
)
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.notification_service import NotificationFanout

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from service_clearinghouse.infrastructure.notification_channels import NotificationChannel

logger = get_logger(__name__)


class UnitOfWork:
    session: AsyncSession
    notifications: NotificationFanout

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLockRegistry,
        channel: NotificationChannel,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._channel = channel
        self._held: list[str] = []

    async def __aenter__(self) -> UnitOfWork:
        self.session = self._session_factory()
        self.notifications = NotificationFanout(self._channel)
        self._held = []
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                await self.session.rollback()
        except BaseException:
            self.notifications.discard()
            raise
        finally:
            await self.session.close()
            self._release_locks()

        if exc_type is None:
            await self.notifications.publish()
        else:
            self.notifications.discard()

    async def lock(self, key: str) -> None:
        """Acquire ``key`` for the rest of this unit of work (re-entrant)."""
        if key in self._held:
            return
        await self._locks.acquire(key)
        self._held.append(key)

    async def lock_job(self, job_id: object) -> None:
        await self.lock(job_lock_key(job_id))

    def _release_locks(self) -> None:
        while self._held:
            self._locks.release(self._held.pop())


def new_unit_of_work() -> UnitOfWork:
    """A unit of work on the process-wide engine, lock registry and channel."""
    from service_clearinghouse.infrastructure.database.engine import get_session_factory
    from service_clearinghouse.infrastructure.notification_channels import (
        get_notification_channel,
    )

    return UnitOfWork(get_session_factory(), default_lock_registry, get_notification_channel())
