
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, created on demand and discarded once idle.

    Waiters on the same key acquire in arrival order; different keys never
    contend.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def acquire(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise

    def release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]


async def run_blocking(fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None) -> Any:
    """Run a blocking storage call in a worker thread, bounded by `timeout` seconds.

    Raises asyncio.TimeoutError when the bound is hit. The thread cannot be
    interrupted and finishes in the background.
    """
    return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)


async def run_serialized(
    locks: KeyedLocks,
    key: str,
    fn: Callable[..., Any],
    *args: Any,
    timeout: Optional[float] = None,
) -> Any:
    """Like run_blocking, but calls sharing `key` run one at a time in arrival order.

    `timeout` bounds the storage call only. Waiting for the key is unbounded,
    so a burst for one device queues behind the call in progress.

    The key stays locked until the worker thread really finishes, even when the
    caller already gave up waiting, so a slow write can never land after a
    later one for the same key.
    """
    await locks.acquire(key)
    try:
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
    except BaseException:
        locks.release(key)
        raise

    def _done(t: "asyncio.Future") -> None:
        locks.release(key)
        if not t.cancelled() and t.exception() is not None and abandoned:
            logger.warning("[storage] abandoned call for %s failed late: %s", key, t.exception())

    abandoned = False
    task.add_done_callback(_done)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except asyncio.TimeoutError:
        abandoned = True
        raise
