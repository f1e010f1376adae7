# billkit/core/time.py
"""
Clock abstraction. Every date the engine stores or compares comes from a
TimeProvider so renewals, trials and proration can be driven by a
simulated clock in tests and demos.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimeProvider(Protocol):
    async def now(self, customer_id: Optional[str] = None) -> datetime:
        ...


class SystemTimeProvider:
    async def now(self, customer_id: Optional[str] = None) -> datetime:
        return utcnow()


class SimulatedTimeProvider:
    """
    Time travel clock.

    A per-customer simulated instant wins over the global one, which wins
    over the wall clock. Customer ids are the host application's external ids.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._global: Optional[datetime] = ensure_aware(start)
        self._customers: Dict[str, datetime] = {}

    async def now(self, customer_id: Optional[str] = None) -> datetime:
        if customer_id is not None and customer_id in self._customers:
            return self._customers[customer_id]
        if self._global is not None:
            return self._global
        return utcnow()

    def set_time(self, when: Optional[datetime], customer_id: Optional[str] = None) -> None:
        when = ensure_aware(when)
        if customer_id is None:
            self._global = when
        elif when is None:
            self._customers.pop(customer_id, None)
        else:
            self._customers[customer_id] = when

    def advance(self, delta: timedelta, customer_id: Optional[str] = None) -> datetime:
        if customer_id is not None:
            base = self._customers.get(customer_id) or self._global or utcnow()
            self._customers[customer_id] = base + delta
            return self._customers[customer_id]

        self._global = (self._global or utcnow()) + delta
        return self._global

    def clear(self, customer_id: Optional[str] = None) -> None:
        if customer_id is None:
            self._global = None
            self._customers.clear()
        else:
            self._customers.pop(customer_id, None)
