# billkit/core/locks.py
"""
Per-customer serialization of state-changing operations.

Activation, plan changes and refunds are check-then-write sequences; two
concurrent requests for one customer could otherwise both pass the check.
Holding is re-entrant within one task context, so a behavior override
that calls back into the engine for the same customer does not deadlock.
"""
import asyncio
import contextvars
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, FrozenSet, Optional

from redis.exceptions import LockError

from .exceptions import ConcurrencyError

logger = logging.getLogger(__name__)

_held: contextvars.ContextVar[FrozenSet[str]] = contextvars.ContextVar(
    "billkit_held_customer_locks", default=frozenset()
)


class CustomerLock(ABC):
    @asynccontextmanager
    async def hold(self, customer_id: str) -> AsyncIterator[None]:
        held = _held.get()
        if customer_id in held:
            yield
            return

        await self._acquire(customer_id)
        token = _held.set(held | {customer_id})
        try:
            yield
        finally:
            _held.reset(token)
            await self._release(customer_id)

    @abstractmethod
    async def _acquire(self, customer_id: str) -> None:
        ...

    @abstractmethod
    async def _release(self, customer_id: str) -> None:
        ...


class LocalCustomerLock(CustomerLock):
    """
    asyncio locks keyed by customer id; serializes within one process.

    An entry lives only while some task holds or waits for it.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    async def _acquire(self, customer_id: str) -> None:
        lock = self._locks.setdefault(customer_id, asyncio.Lock())
        self._users[customer_id] = self._users.get(customer_id, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._forget(customer_id)
            raise ConcurrencyError(f"Timed out waiting for customer {customer_id}")
        except asyncio.CancelledError:
            self._forget(customer_id)
            raise

    async def _release(self, customer_id: str) -> None:
        lock = self._locks.get(customer_id)
        if lock is not None and lock.locked():
            lock.release()
        self._forget(customer_id)

    def _forget(self, customer_id: str) -> None:
        users = self._users.get(customer_id, 0) - 1
        if users > 0:
            self._users[customer_id] = users
            return
        self._users.pop(customer_id, None)
        self._locks.pop(customer_id, None)


class RedisCustomerLock(CustomerLock):
    """Redis-backed lock for hosts running several worker processes"""

    def __init__(self, redis_client, timeout: float = 30.0, prefix: str = "billkit:lock:"):
        self.redis = redis_client
        self.timeout = timeout
        self.prefix = prefix
        self._locks: Dict[str, object] = {}

    async def _acquire(self, customer_id: str) -> None:
        lock = self.redis.lock(
            f"{self.prefix}{customer_id}",
            timeout=self.timeout,
            blocking_timeout=self.timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise ConcurrencyError(f"Timed out waiting for customer {customer_id}")
        self._locks[customer_id] = lock

    async def _release(self, customer_id: str) -> None:
        lock = self._locks.pop(customer_id, None)
        if lock is None:
            return
        try:
            await lock.release()
        except LockError as e:
            # Lock expired while held; the next holder already owns the key
            logger.warning(f"Failed to release lock for customer {customer_id}: {e}")
