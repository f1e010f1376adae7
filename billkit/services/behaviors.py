# billkit/services/behaviors.py
"""
Lifecycle hooks with built-in defaults.

A host application may override any hook through ``BillingBehaviors``.
The override receives ``(ctx, params, default_behavior)`` where
``default_behavior`` is a zero-argument coroutine function already bound
to the same context and params. Whatever the hook returns becomes the
result of the operation that triggered it.

The defaults below never take the customer lock themselves: they always
run inside an operation that already holds it.
"""
import functools
import logging
from typing import Any, Awaitable, Callable, Dict

from ..core.context import BillingContext
from ..schemas.behaviors import (
    OnDowngradeParams,
    OnPaymentFailedParams,
    OnRefundParams,
    OnSubscriptionCancelParams,
    OnTrialEndParams,
)
from ..schemas.billing import CancelAt, SubscriptionStatus
from ..schemas.results import (
    CancelSubscriptionResult,
    ChangeSubscriptionResult,
    CreateRefundResult,
    PaymentFailedResult,
    TrialEndResult,
)
from .state_machine import cancel_now, transition

logger = logging.getLogger(__name__)


async def default_on_refund(ctx: BillingContext, params: OnRefundParams) -> CreateRefundResult:
    """Refunding a subscription payment ends that subscription right away"""
    subscription = params.subscription
    if subscription is not None and subscription.status != SubscriptionStatus.CANCELED:
        now = await ctx.now(params.customer.external_id)
        await cancel_now(ctx.repository, subscription, now)
        logger.info(f"Subscription {subscription.id} canceled after refund {params.refund.id}")

    return CreateRefundResult(refund=params.refund, original_payment=params.payment)


async def default_on_payment_failed(
    ctx: BillingContext, params: OnPaymentFailedParams
) -> PaymentFailedResult:
    subscription = await transition(ctx.repository, params.subscription, SubscriptionStatus.PAST_DUE)
    logger.warning(f"Subscription {subscription.id} is past due: {params.error or 'payment failed'}")
    return PaymentFailedResult(subscription=subscription)


async def default_on_subscription_cancel(
    ctx: BillingContext, params: OnSubscriptionCancelParams
) -> CancelSubscriptionResult:
    subscription = params.subscription
    now = await ctx.now(params.customer.external_id)

    # A checkout that never completed has no period to run out
    if (
        CancelAt(params.cancel_at) == CancelAt.IMMEDIATELY
        or subscription.status == SubscriptionStatus.PENDING_PAYMENT
    ):
        canceled = await cancel_now(ctx.repository, subscription, now)
        logger.info(f"Subscription {subscription.id} canceled immediately")
        return CancelSubscriptionResult(subscription=canceled, canceled_immediately=True)

    updated = await ctx.repository.update_subscription(
        subscription.id,
        cancel_at=subscription.current_period_end,
        canceled_at=now,
    )
    logger.info(
        f"Subscription {subscription.id} will cancel at {subscription.current_period_end.isoformat()}"
    )
    return CancelSubscriptionResult(
        subscription=updated,
        canceled_immediately=False,
        access_until=subscription.current_period_end,
    )


async def default_on_trial_end(ctx: BillingContext, params: OnTrialEndParams) -> TrialEndResult:
    """Convert the trial when a payment method is on file, otherwise cancel it"""
    subscription = params.subscription
    now = await ctx.now(params.customer.external_id)

    if subscription.cancel_at is not None and subscription.cancel_at <= now:
        canceled = await cancel_now(ctx.repository, subscription, now)
        logger.info(f"Trial {subscription.id} ended with a pending cancellation")
        return TrialEndResult(subscription=canceled, converted=False)

    if not params.customer.provider_customer_id:
        canceled = await cancel_now(ctx.repository, subscription, now)
        logger.info(f"Trial {subscription.id} ended without a payment method, canceled")
        return TrialEndResult(subscription=canceled, converted=False)

    # The period end is left at the trial end so the next renewal run bills it
    activated = await transition(ctx.repository, subscription, SubscriptionStatus.ACTIVE)
    logger.info(f"Trial {subscription.id} converted to active")
    return TrialEndResult(subscription=activated, converted=True)


async def default_on_downgrade(ctx: BillingContext, params: OnDowngradeParams) -> ChangeSubscriptionResult:
    subscription = await ctx.repository.update_subscription(
        params.subscription.id,
        scheduled_plan_code=params.new_plan.code,
        scheduled_interval=params.new_interval,
    )
    logger.info(
        f"Subscription {subscription.id} scheduled to move to {params.new_plan.code} "
        f"({params.new_interval.value}) at {subscription.current_period_end.isoformat()}"
    )
    return ChangeSubscriptionResult(
        subscription=subscription,
        previous_plan=params.previous_plan,
        new_plan=params.new_plan,
        change_type="downgrade",
        scheduled=True,
    )


DEFAULT_BEHAVIORS: Dict[str, Callable[[BillingContext, Any], Awaitable[Any]]] = {
    "on_refund": default_on_refund,
    "on_payment_failed": default_on_payment_failed,
    "on_subscription_cancel": default_on_subscription_cancel,
    "on_trial_end": default_on_trial_end,
    "on_downgrade": default_on_downgrade,
}


async def run_behavior(ctx: BillingContext, name: str, params: Any) -> Any:
    """Run the host override for ``name`` if there is one, else the default"""
    try:
        default_fn = DEFAULT_BEHAVIORS[name]
    except KeyError:
        raise ValueError(f"Unknown behavior: {name}")

    default_behavior = functools.partial(default_fn, ctx, params)
    override = getattr(ctx.behaviors, name, None)

    if override is not None:
        logger.debug(f"Running host override for {name}")
        return await override(ctx, params, default_behavior)

    logger.debug(f"Running default behavior for {name}")
    return await default_behavior()
