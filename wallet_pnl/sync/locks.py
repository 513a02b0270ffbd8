"""
Keyed advisory locks with a bounded wait.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Dict, Hashable, Iterable, Optional, Tuple

from wallet_pnl.errors import SyncLockTimeout

logger = logging.getLogger(__name__)


class WalletLocks:
    """
    Registry of asyncio locks keyed by an arbitrary hashable.

    Used per wallet to keep full sync and authoritative import apart, and
    per (wallet, market, outcome) to serialise read-apply-write on a position.
    """

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = default_timeout
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout: Optional[float] = None):
        """
        Acquire the lock for `key`, waiting at most `timeout` seconds.

        Raises:
            SyncLockTimeout: if the lock is still held by someone else
        """
        timeout = timeout if timeout is not None else self.default_timeout
        lock = self.get(key)

        try:
            if timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out waiting for lock {key!r}")
            raise SyncLockTimeout(str(key), timeout)

        try:
            yield
        finally:
            lock.release()

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[Hashable], timeout: Optional[float] = None):
        """Acquire several keys in sorted order, releasing all on exit"""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key, timeout))
            yield


def position_key(wallet_id: int, market_id: int, outcome: int) -> Tuple:
    """Lock key for one (wallet, market, outcome) position"""
    return ("position", wallet_id, market_id, outcome)
