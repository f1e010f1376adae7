# billkit/services/payment_failed_service.py
from typing import Optional

from ..core.context import BillingContext
from ..core.exceptions import customer_not_found, subscription_not_found
from ..schemas.behaviors import OnPaymentFailedParams
from ..schemas.results import PaymentFailedResult
from .behaviors import run_behavior


async def handle_payment_failed(
    ctx: BillingContext,
    subscription_id: str,
    error: Optional[str] = None,
) -> PaymentFailedResult:
    """Run the payment-failed hook (default: past_due) for a subscription"""
    repository = ctx.repository

    subscription = await repository.find_subscription_by_id(subscription_id)
    if subscription is None:
        raise subscription_not_found(f"Subscription not found: {subscription_id}")

    customer = await repository.find_customer_by_id(subscription.customer_id)
    if customer is None:
        raise customer_not_found(subscription.customer_id)

    return await run_behavior(
        ctx,
        "on_payment_failed",
        OnPaymentFailedParams(subscription=subscription, customer=customer, error=error),
    )
