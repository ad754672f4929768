"""
Atomic units of work

run_atomic() opens a fresh session, runs the work inside one database
transaction and commits, re-running the whole unit on write conflicts.

Units that touch the same wallet are serialized in-process by a keyed
lock (one asyncio.Lock per user id); different users run concurrently.
Across processes the database row locks and version counters do the
same job.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Iterable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from utils.retry import RetryPolicy, retry_on_conflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLock:
    """
    Lazily created asyncio locks keyed by string.

    Several keys are always taken in sorted order so two units locking
    the same pair of users cannot deadlock. Entries are dropped once no
    task holds or waits for them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str):
        remaining = self._users.get(key, 1) - 1
        if remaining <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._users[key] = remaining

    @asynccontextmanager
    async def hold(self, *keys: Optional[str]):
        ordered = sorted({k for k in keys if k})
        held = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide wallet locks
wallet_locks = KeyedLock()


async def run_atomic(
    session_factory: async_sessionmaker,
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    lock_keys: Iterable[Optional[str]] = (),
    policy: Optional[RetryPolicy] = None,
    locks: Optional[KeyedLock] = None,
    description: str = "atomic unit"
) -> T:
    """
    Run `work(session)` as one transaction with conflict retry.

    Args:
        session_factory: Factory producing AsyncSession objects
        work: Coroutine function doing the reads and writes; must not commit
        lock_keys: User ids whose wallets the unit may touch
        policy: Retry policy (defaults from settings)
        locks: KeyedLock to use (defaults to the process-wide wallet locks)
        description: Name used in conflict logs
    """
    policy = policy or RetryPolicy.from_settings()
    locks = locks if locks is not None else wallet_locks

    async def attempt() -> T:
        async with session_factory() as session:
            async with session.begin():
                return await work(session)

    async with locks.hold(*lock_keys):
        return await retry_on_conflict(attempt, policy, description=description)
