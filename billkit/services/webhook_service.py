# billkit/services/webhook_service.py
import logging
from typing import Mapping

from ..core.context import BillingContext
from ..payments.base import Capability
from ..schemas.billing import Subscription, SubscriptionStatus
from ..schemas.payments import ConfirmResult
from ..schemas.results import WebhookResult
from .payment_failed_service import handle_payment_failed
from .state_machine import CANCELED_BEFORE_PAYMENT, cancel_now
from .subscription_service import (
    activate_subscription,
    initial_period,
    record_initial_payment,
    remember_provider_customer,
)

logger = logging.getLogger(__name__)

REPLACED_BY = "replaced_by"


def _paid_after_cancel(subscription: Subscription) -> bool:
    return (
        subscription.status == SubscriptionStatus.CANCELED
        and subscription.metadata.get(CANCELED_BEFORE_PAYMENT) is True
        and REPLACED_BY not in subscription.metadata
    )


async def _already_recorded(ctx: BillingContext, confirmation: ConfirmResult) -> bool:
    if not confirmation.provider_payment_id:
        return False
    return await ctx.repository.find_payment_by_provider_id(confirmation.provider_payment_id) is not None


async def _replace_paid_checkout(
    ctx: BillingContext,
    stale: Subscription,
    confirmation: ConfirmResult,
    now,
) -> Subscription:
    """
    A checkout was paid after a newer checkout canceled it. The canceled row
    stays canceled; a copy of it starts now and becomes the live subscription.
    """
    repository = ctx.repository

    price = repository.get_plan_price(stale.plan_code, stale.interval)
    if price is None:
        logger.error(f"Checkout {stale.id} was paid but {stale.plan_code}/{stale.interval.value} has no price")
        return stale

    period_start, period_end, trial_start, trial_end = initial_period(price, stale.interval, now)
    metadata = {k: v for k, v in stale.metadata.items() if k != CANCELED_BEFORE_PAYMENT}
    replacement = await repository.create_subscription(
        customer_id=stale.customer_id,
        plan_code=stale.plan_code,
        interval=stale.interval,
        status=SubscriptionStatus.PENDING_PAYMENT,
        period_start=period_start,
        period_end=period_end,
        trial_start=trial_start,
        trial_end=trial_end,
        metadata={**metadata, "replaces": stale.id},
    )
    await repository.update_subscription(stale.id, metadata={**stale.metadata, REPLACED_BY: replacement.id})

    fields = {}
    if confirmation.provider_subscription_id:
        fields["provider_subscription_id"] = confirmation.provider_subscription_id
    replacement = await activate_subscription(ctx, replacement, now, **fields)
    await record_initial_payment(ctx, replacement, confirmation.provider_payment_id)

    logger.warning(f"Checkout {stale.id} was paid after it had been canceled; {replacement.id} activated in its place")
    return replacement


async def handle_webhook(
    ctx: BillingContext,
    payload: bytes,
    headers: Mapping[str, str],
) -> WebhookResult:
    """
    Apply an asynchronous payment confirmation from the provider.

    Events that do not concern a known subscription are acknowledged and
    otherwise ignored so the provider stops retrying them.
    """
    ctx.payment_adapter.require(Capability.CONFIRM)
    repository = ctx.repository

    confirmation = await ctx.payment_adapter.confirm_payment(payload, headers)
    if confirmation is None:
        return WebhookResult()

    subscription = await repository.find_subscription_by_id(confirmation.subscription_id)
    if subscription is None:
        logger.warning(f"Webhook for unknown subscription {confirmation.subscription_id}")
        return WebhookResult(subscription_id=confirmation.subscription_id)

    customer = await repository.find_customer_by_id(subscription.customer_id)
    if customer is None:
        logger.warning(f"Webhook for subscription {subscription.id} without a customer")
        return WebhookResult(subscription_id=subscription.id, status=subscription.status.value)

    async with ctx.lock.hold(customer.external_id):
        subscription = await repository.find_subscription_by_id(subscription.id)
        now = await ctx.now(customer.external_id)

        if confirmation.status == "active":
            if subscription.status == SubscriptionStatus.PENDING_PAYMENT:
                fields = {}
                if confirmation.provider_subscription_id:
                    fields["provider_subscription_id"] = confirmation.provider_subscription_id
                subscription = await activate_subscription(ctx, subscription, now, **fields)
                await record_initial_payment(ctx, subscription, confirmation.provider_payment_id)
            elif _paid_after_cancel(subscription) and not await _already_recorded(ctx, confirmation):
                subscription = await _replace_paid_checkout(ctx, subscription, confirmation, now)
            elif subscription.metadata.get(REPLACED_BY):
                logger.info(f"Checkout {subscription.id} already replaced, confirmation ignored")
                replacement = await repository.find_subscription_by_id(subscription.metadata[REPLACED_BY])
                subscription = replacement or subscription
            else:
                logger.info(f"Subscription {subscription.id} already {subscription.status.value}, confirmation ignored")
            await remember_provider_customer(ctx, customer, confirmation.provider_customer_id)

        elif subscription.status == SubscriptionStatus.PENDING_PAYMENT:
            subscription = await cancel_now(repository, subscription, now)
            logger.warning(f"Checkout for subscription {subscription.id} failed: {confirmation.error}")

        elif subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
            failed = await handle_payment_failed(ctx, subscription.id, confirmation.error)
            subscription = getattr(failed, "subscription", None) or subscription

        else:
            logger.info(f"Payment failure for {subscription.status.value} subscription {subscription.id} ignored")

    return WebhookResult(subscription_id=subscription.id, status=subscription.status.value)
