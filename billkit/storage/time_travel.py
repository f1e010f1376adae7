# billkit/storage/time_travel.py
"""
Time travel clock kept in storage.

The in-process SimulatedTimeProvider is enough for tests, but API workers
and Celery workers are separate processes. Keeping the simulated instant in
the billing database lets all of them agree on what "now" is. Development
and demo use only.
"""
import logging
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from ..core.time import ensure_aware, utcnow
from .base import TIME_TRAVEL, StorageAdapter, eq

logger = logging.getLogger(__name__)

GLOBAL_ID = "current"


def _state_id(customer_id: Optional[str]) -> str:
    return GLOBAL_ID if customer_id is None else f"customer:{customer_id}"


class StoredTimeProvider:
    """
    A customer's simulated instant wins over the global one, which wins
    over the wall clock. Customer ids are the host application's ids.
    """

    def __init__(self, adapter: StorageAdapter):
        self.adapter = adapter

    async def _stored(self, customer_id: Optional[str]) -> Optional[datetime]:
        record = await self.adapter.find_one(TIME_TRAVEL, [eq("id", _state_id(customer_id))])
        if record is None:
            return None
        return ensure_aware(record.get("simulated_time"))

    async def get_time(self, customer_id: Optional[str] = None) -> Optional[datetime]:
        """The simulated instant in effect for this scope, or None on the wall clock"""
        if customer_id is not None:
            simulated = await self._stored(customer_id)
            if simulated is not None:
                return simulated
        return await self._stored(None)

    async def now(self, customer_id: Optional[str] = None) -> datetime:
        return await self.get_time(customer_id) or utcnow()

    async def set_time(self, when: Optional[datetime], customer_id: Optional[str] = None) -> Optional[datetime]:
        when = ensure_aware(when)
        state_id = _state_id(customer_id)
        stamp = utcnow()

        updated = await self.adapter.update(
            TIME_TRAVEL, [eq("id", state_id)], {"simulated_time": when, "updated_at": stamp}
        )
        if updated is None:
            await self.adapter.create(TIME_TRAVEL, {
                "id": state_id,
                "customer_id": customer_id,
                "simulated_time": when,
                "created_at": stamp,
                "updated_at": stamp,
            })

        scope = f"customer {customer_id}" if customer_id else "everyone"
        logger.info(f"Time travel for {scope}: {when.isoformat() if when else 'real time'}")
        return when

    async def advance(
        self,
        days: int = 0,
        hours: int = 0,
        months: int = 0,
        customer_id: Optional[str] = None,
    ) -> datetime:
        """Move the clock forward from the current (simulated or real) instant"""
        current = await self.now(customer_id)
        return await self.set_time(current + relativedelta(months=months, days=days, hours=hours), customer_id)

    async def clear(self, customer_id: Optional[str] = None) -> None:
        """Back to the wall clock; without a customer id every override goes"""
        if customer_id is None:
            await self.adapter.delete_many(TIME_TRAVEL, [])
            logger.info("Time travel reset for everyone")
        else:
            await self.adapter.delete(TIME_TRAVEL, [eq("id", _state_id(customer_id))])
            logger.info(f"Time travel reset for customer {customer_id}")
