# billkit/services/refund_service.py
import logging
from typing import Optional

from ..core.context import BillingContext
from ..core.exceptions import PreconditionError, ProviderError, customer_not_found, payment_not_found
from ..payments.base import Capability
from ..schemas.behaviors import OnRefundParams
from ..schemas.billing import Payment, PaymentStatus, PaymentType
from ..schemas.payments import RefundParams
from ..schemas.results import CreateRefundResult
from .behaviors import run_behavior

logger = logging.getLogger(__name__)


async def require_payment(ctx: BillingContext, payment_id: str) -> Payment:
    payment = await ctx.repository.find_payment_by_id(payment_id)
    if payment is None:
        raise payment_not_found(payment_id)
    return payment


def refundable_amount(payment: Payment, amount: Optional[int] = None) -> int:
    """
    Validate a refund request against what is left on the payment.

    Returns the amount to refund; the full remainder when ``amount`` is None.
    """
    remaining = payment.refundable_amount
    if payment.type != PaymentType.REFUND and (payment.status == PaymentStatus.REFUNDED or remaining <= 0):
        raise PreconditionError("Payment has already been fully refunded", "ALREADY_REFUNDED")

    if payment.status != PaymentStatus.SUCCEEDED or payment.type == PaymentType.REFUND:
        raise PreconditionError(
            f"Cannot refund payment with status {payment.status.value}", "PAYMENT_NOT_REFUNDABLE"
        )

    if amount is None:
        return remaining
    if amount <= 0:
        raise PreconditionError("Refund amount must be positive")
    if amount > remaining:
        raise PreconditionError(
            f"Cannot refund {amount}. Only {remaining} is available for refund.",
            "REFUND_EXCEEDS_REMAINING",
        )
    return amount


async def create_refund(
    ctx: BillingContext,
    payment_id: str,
    amount: Optional[int] = None,
    reason: Optional[str] = None,
) -> CreateRefundResult:
    repository = ctx.repository

    ctx.payment_adapter.require(Capability.REFUND)
    payment = await require_payment(ctx, payment_id)
    refund_amount = refundable_amount(payment, amount)

    if not payment.provider_payment_id:
        raise PreconditionError(
            "Payment does not have a provider payment id. Cannot process refund.",
            "PAYMENT_NOT_REFUNDABLE",
        )

    customer = await repository.find_customer_by_id(payment.customer_id)
    if customer is None:
        raise customer_not_found(payment.customer_id)

    result = await ctx.payment_adapter.refund(
        RefundParams(provider_payment_id=payment.provider_payment_id, amount=refund_amount, reason=reason)
    )
    if result.status == "failed":
        logger.warning(f"Refund of payment {payment.id} failed: {result.error}")
        raise ProviderError(result.error or "Refund failed", "REFUND_FAILED")

    refunded_total = (payment.refunded_amount or 0) + refund_amount
    status = PaymentStatus.REFUNDED if refunded_total >= payment.amount else PaymentStatus.SUCCEEDED
    payment = await repository.update_payment(payment.id, status=status, refunded_amount=refunded_total)

    refund = await repository.create_payment(
        customer_id=payment.customer_id,
        subscription_id=payment.subscription_id,
        type=PaymentType.REFUND,
        status=PaymentStatus.SUCCEEDED,
        amount=-refund_amount,
        currency=payment.currency,
        provider_payment_id=result.provider_refund_id,
        metadata={"original_payment_id": payment.id, "reason": reason},
    )
    logger.info(f"Refunded {refund_amount} of payment {payment.id} as {refund.id}")

    subscription = None
    if payment.subscription_id:
        subscription = await repository.find_subscription_by_id(payment.subscription_id)

    return await run_behavior(
        ctx,
        "on_refund",
        OnRefundParams(payment=payment, refund=refund, subscription=subscription, customer=customer),
    )
