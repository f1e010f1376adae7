# billkit/payments/mock.py
import uuid
from typing import Any, Dict, List, Tuple

from ..schemas.payments import (
    ChargeParams,
    ChargeResult,
    PaymentParams,
    PaymentResult,
    RefundParams,
    RefundResult,
)
from .base import Capability, PaymentAdapter


class MockPaymentAdapter(PaymentAdapter):
    """
    Adapter that never talks to a provider.

    Subscriptions activate immediately and every charge or refund succeeds
    with a mock id, unless the failure switches are set. Used when all plans
    are free, for local development, and in tests. Every call is recorded
    in ``calls`` as ``(method, params)``.
    """

    id = "mock"
    capabilities = frozenset({Capability.CHARGE, Capability.REFUND})

    def __init__(
        self,
        payment_status: str = "active",
        fail_charges: bool = False,
        fail_refunds: bool = False,
        error: str = "Card declined",
    ):
        self.payment_status = payment_status
        self.fail_charges = fail_charges
        self.fail_refunds = fail_refunds
        self.error = error
        self.calls: List[Tuple[str, Any]] = []
        self.charges_by_key: Dict[str, ChargeResult] = {}

    def calls_to(self, method: str) -> List[Any]:
        return [params for name, params in self.calls if name == method]

    async def process_payment(self, params: PaymentParams) -> PaymentResult:
        self.calls.append(("process_payment", params))
        provider_customer_id = params.customer.provider_customer_id or f"cus_mock_{uuid.uuid4().hex}"

        if self.payment_status == "pending":
            session_id = f"cs_mock_{uuid.uuid4().hex}"
            return PaymentResult(
                status="pending",
                session_id=session_id,
                redirect_url=f"{params.success_url or 'https://checkout.invalid'}?session_id={session_id}",
                provider_customer_id=provider_customer_id,
            )
        if self.payment_status == "failed":
            return PaymentResult(status="failed", error=self.error)

        return PaymentResult(
            status="active",
            provider_customer_id=provider_customer_id,
            provider_payment_id=f"pay_mock_{uuid.uuid4().hex}",
        )

    async def charge(self, params: ChargeParams) -> ChargeResult:
        self.calls.append(("charge", params))
        # A repeated key replays the first successful result, like a provider would
        if params.idempotency_key in self.charges_by_key:
            return self.charges_by_key[params.idempotency_key]
        if self.fail_charges:
            return ChargeResult(status="failed", error=self.error)

        result = ChargeResult(status="success", provider_payment_id=f"pay_mock_{uuid.uuid4().hex}")
        if params.idempotency_key:
            self.charges_by_key[params.idempotency_key] = result
        return result

    async def refund(self, params: RefundParams) -> RefundResult:
        self.calls.append(("refund", params))
        if self.fail_refunds:
            return RefundResult(status="failed", error=self.error)
        return RefundResult(status="refunded", provider_refund_id=f"ref_mock_{uuid.uuid4().hex}")


class CheckoutOnlyPaymentAdapter(MockPaymentAdapter):
    """Activates subscriptions but cannot charge or refund on its own"""

    id = "checkout-only"
    capabilities = frozenset()
