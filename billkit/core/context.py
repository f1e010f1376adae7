# billkit/core/context.py
from dataclasses import dataclass, field
from typing import Optional

from ..payments.base import PaymentAdapter
from ..storage.repository import BillingRepository
from .config import BillingBehaviors
from .locks import CustomerLock, LocalCustomerLock
from .time import SystemTimeProvider, TimeProvider


@dataclass
class BillingContext:
    """Everything a billing operation needs, passed explicitly to each service call"""

    repository: BillingRepository
    payment_adapter: PaymentAdapter
    clock: TimeProvider = field(default_factory=SystemTimeProvider)
    behaviors: BillingBehaviors = field(default_factory=BillingBehaviors)
    lock: CustomerLock = field(default_factory=LocalCustomerLock)

    async def now(self, customer_external_id: Optional[str] = None):
        return await self.clock.now(customer_external_id)
