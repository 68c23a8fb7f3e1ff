"""Keyed asyncio locks used to serialize work on one job (or one payee).

Every mutation of a job, its quotes, escrow and settlement records runs while
holding ``job:<id>``; payout requests hold ``payouts:<fulfiller>``. Recomputing
a fulfiller profile holds ``profile:<fulfiller>``, always after the job lock.
Locks are created on first use and dropped once nobody holds or awaits them.

These locks serialize coroutines in one process. Across processes the
compare-and-set updates in the repositories keep the same guarantees.
"""

from __future__ import annotations

import asyncio


class KeyedLockRegistry:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    async def acquire(self, key: str) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise

    def release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def _forget(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]


def job_lock_key(job_id: object) -> str:
    return f"job:{job_id}"


def payout_lock_key(fulfiller_id: str) -> str:
    return f"payouts:{fulfiller_id}"


def profile_lock_key(fulfiller_id: str) -> str:
    return f"profile:{fulfiller_id}"


# Process-wide registry shared by every unit of work
default_lock_registry = KeyedLockRegistry()
