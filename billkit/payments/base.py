# billkit/payments/base.py
"""
Payment adapter interface.

The engine decides what to charge and when; adapters move the money.
Only process_payment is mandatory. Charging, refunding and webhook
confirmation are capabilities an adapter declares up front, and the
engine checks them with supports() before calling.
"""
import enum
from abc import ABC, abstractmethod
from typing import FrozenSet, Mapping, Optional

from ..core.exceptions import capability_not_supported
from ..schemas.payments import (
    ChargeParams,
    ChargeResult,
    ConfirmResult,
    PaymentParams,
    PaymentResult,
    RefundParams,
    RefundResult,
)


class Capability(str, enum.Enum):
    CHARGE = "charge"
    REFUND = "refund"
    CONFIRM = "confirm"


class PaymentAdapter(ABC):
    id: str = "abstract"
    capabilities: FrozenSet[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if not self.supports(capability):
            raise capability_not_supported(f"{capability.value}")

    @abstractmethod
    async def process_payment(self, params: PaymentParams) -> PaymentResult:
        """Start payment for a new subscription: active, pending (redirect) or failed"""

    async def charge(self, params: ChargeParams) -> ChargeResult:
        raise capability_not_supported(Capability.CHARGE.value)

    async def refund(self, params: RefundParams) -> RefundResult:
        raise capability_not_supported(Capability.REFUND.value)

    async def confirm_payment(self, payload: bytes, headers: Mapping[str, str]) -> Optional[ConfirmResult]:
        """Translate a provider callback; None when the event is not ours to act on"""
        raise capability_not_supported(Capability.CONFIRM.value)
