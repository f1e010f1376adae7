# billkit/services/subscription_service.py
"""
On-demand subscription actions: create, cancel, change plan, resume.

Every function takes the caller's customer id (the host application's user
id) and expects to run under that customer's lock.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from ..core.context import BillingContext
from ..core.exceptions import (
    PreconditionError,
    ProviderError,
    customer_not_found,
    plan_not_found,
    price_not_found,
    subscription_not_found,
)
from ..payments.base import Capability
from ..schemas.behaviors import OnDowngradeParams, OnSubscriptionCancelParams
from ..schemas.billing import (
    BillingInterval,
    CancelAt,
    Customer,
    Payment,
    PaymentStatus,
    PaymentType,
    Price,
    Subscription,
    SubscriptionStatus,
)
from ..schemas.payments import PaymentParams, PaymentPlan
from ..schemas.results import (
    CancelSubscriptionResult,
    ChangeSubscriptionResult,
    CreateSubscriptionResult,
    SubscriptionView,
)
from .behaviors import run_behavior
from .charges import charge_key, charge_once, payment_customer
from .periods import calculate_next_period
from .proration import calculate_proration, is_upgrade
from .state_machine import cancel_live_siblings, cancel_now, transition

logger = logging.getLogger(__name__)


async def require_customer(ctx: BillingContext, customer_id: str) -> Customer:
    customer = await ctx.repository.find_customer_by_external_id(customer_id)
    if customer is None:
        raise customer_not_found(customer_id)
    return customer


async def remember_provider_customer(
    ctx: BillingContext, customer: Customer, provider_customer_id: Optional[str]
) -> Customer:
    """Store a provider customer id the first time the adapter issues one"""
    if provider_customer_id and not customer.provider_customer_id:
        updated = await ctx.repository.update_customer(
            customer.id, provider_customer_id=provider_customer_id
        )
        return updated or customer
    return customer


async def activate_subscription(
    ctx: BillingContext,
    subscription: Subscription,
    now,
    **fields,
) -> Subscription:
    """
    Move a subscription out of pending_payment after its payment cleared.

    Older live subscriptions of the same customer are canceled first. A
    subscription inside its trial window becomes trialing instead of active.
    """
    canceled = await cancel_live_siblings(ctx.repository, subscription, now)
    if canceled:
        logger.info(f"Replaced {canceled} previous subscription(s) for customer {subscription.customer_id}")

    in_trial = subscription.trial_end is not None and subscription.trial_end > now
    target = SubscriptionStatus.TRIALING if in_trial else SubscriptionStatus.ACTIVE
    if subscription.status == SubscriptionStatus.TRIALING:
        target = SubscriptionStatus.TRIALING

    return await transition(ctx.repository, subscription, target, **fields)


async def record_initial_payment(
    ctx: BillingContext,
    subscription: Subscription,
    provider_payment_id: Optional[str],
) -> Optional[Payment]:
    """Ledger row for the payment that activated a paid, non-trial subscription"""
    price = ctx.repository.get_plan_price(subscription.plan_code, subscription.interval)
    if price is None or price.amount == 0 or subscription.status != SubscriptionStatus.ACTIVE:
        return None

    return await ctx.repository.create_payment(
        customer_id=subscription.customer_id,
        subscription_id=subscription.id,
        type=PaymentType.SUBSCRIPTION,
        status=PaymentStatus.SUCCEEDED,
        amount=price.amount,
        currency=price.currency,
        provider_payment_id=provider_payment_id,
        metadata={"plan_code": subscription.plan_code, "interval": subscription.interval.value},
    )


def initial_period(price: Price, interval: BillingInterval, now) -> Tuple:
    """(period_start, period_end, trial_start, trial_end) of a subscription starting now"""
    if price.trial_days:
        trial_end = now + timedelta(days=price.trial_days)
        return now, trial_end, now, trial_end
    period_start, period_end = calculate_next_period(now, interval)
    return period_start, period_end, None, None


async def create_subscription(
    ctx: BillingContext,
    customer_id: str,
    plan_code: str,
    interval: BillingInterval = BillingInterval.MONTHLY,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> CreateSubscriptionResult:
    repository = ctx.repository
    interval = BillingInterval(interval)

    customer = await require_customer(ctx, customer_id)
    plan = repository.find_plan(plan_code)
    if plan is None:
        raise plan_not_found(plan_code)
    price = repository.get_plan_price(plan_code, interval)
    if price is None:
        raise price_not_found(plan_code, interval.value)

    now = await ctx.now(customer.external_id)

    # Abandoned checkouts never block a new one; a late payment for one still activates
    for stale in await repository.list_subscriptions(customer.id, [SubscriptionStatus.PENDING_PAYMENT]):
        await cancel_now(repository, stale, now)
        logger.info(f"Canceled abandoned checkout {stale.id}")

    period_start, period_end, trial_start, trial_end = initial_period(price, interval, now)

    subscription = await repository.create_subscription(
        customer_id=customer.id,
        plan_code=plan.code,
        interval=interval,
        status=SubscriptionStatus.PENDING_PAYMENT,
        period_start=period_start,
        period_end=period_end,
        trial_start=trial_start,
        trial_end=trial_end,
        metadata=metadata,
    )
    logger.info(f"Created subscription {subscription.id} ({plan.code}/{interval.value}) for {customer.external_id}")

    result = await ctx.payment_adapter.process_payment(
        PaymentParams(
            customer=payment_customer(customer),
            plan=PaymentPlan(code=plan.code, name=plan.name),
            price=price,
            subscription_id=subscription.id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"subscription_id": subscription.id, "customer_id": customer.id},
        )
    )

    if result.status == "active":
        subscription = await activate_subscription(ctx, subscription, now)
        await remember_provider_customer(ctx, customer, result.provider_customer_id)

        payment = await record_initial_payment(ctx, subscription, result.provider_payment_id)
        return CreateSubscriptionResult(subscription=subscription, payment=payment)

    if result.status == "pending":
        subscription = await repository.update_subscription(
            subscription.id, provider_checkout_session_id=result.session_id
        )
        await remember_provider_customer(ctx, customer, result.provider_customer_id)
        logger.info(f"Subscription {subscription.id} awaiting checkout {result.session_id}")
        return CreateSubscriptionResult(subscription=subscription, redirect_url=result.redirect_url)

    await cancel_now(repository, subscription, now)
    logger.warning(f"Payment for subscription {subscription.id} failed: {result.error}")
    raise ProviderError(result.error or "Payment failed", "PAYMENT_FAILED")


async def cancel_subscription(
    ctx: BillingContext,
    customer_id: str,
    cancel_at: CancelAt = CancelAt.PERIOD_END,
) -> CancelSubscriptionResult:
    customer = await require_customer(ctx, customer_id)
    subscription = await ctx.repository.find_live_subscription(customer.id)
    if subscription is None:
        raise subscription_not_found()

    return await run_behavior(
        ctx,
        "on_subscription_cancel",
        OnSubscriptionCancelParams(
            subscription=subscription,
            customer=customer,
            cancel_at=CancelAt(cancel_at),
        ),
    )


async def resume_subscription(ctx: BillingContext, customer_id: str) -> Subscription:
    """Undo a cancellation scheduled for the end of the period"""
    customer = await require_customer(ctx, customer_id)
    subscription = await ctx.repository.find_live_subscription(customer.id)
    if subscription is None:
        raise subscription_not_found()

    if subscription.cancel_at is None or subscription.status not in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
    ):
        raise PreconditionError("Subscription is not scheduled for cancellation")

    resumed = await ctx.repository.update_subscription(subscription.id, cancel_at=None, canceled_at=None)
    logger.info(f"Subscription {subscription.id} resumed")
    return resumed


async def change_subscription(
    ctx: BillingContext,
    customer_id: str,
    new_plan_code: str,
    new_interval: Optional[BillingInterval] = None,
    prorate: bool = True,
) -> ChangeSubscriptionResult:
    repository = ctx.repository

    customer = await require_customer(ctx, customer_id)
    subscription = await repository.find_live_subscription(customer.id)
    if subscription is None or subscription.status == SubscriptionStatus.PENDING_PAYMENT:
        raise subscription_not_found()

    interval = BillingInterval(new_interval or subscription.interval)
    if subscription.plan_code == new_plan_code and subscription.interval == interval:
        raise PreconditionError("Already on this plan", "ALREADY_ON_PLAN")

    old_plan = repository.find_plan(subscription.plan_code)
    old_price = repository.get_plan_price(subscription.plan_code, subscription.interval)
    if old_price is None:
        raise price_not_found(subscription.plan_code, subscription.interval.value)

    new_plan = repository.find_plan(new_plan_code)
    if new_plan is None:
        raise plan_not_found(new_plan_code)
    new_price = repository.get_plan_price(new_plan_code, interval)
    if new_price is None:
        raise price_not_found(new_plan_code, interval.value)

    now = await ctx.now(customer.external_id)
    proration = calculate_proration(
        old_price.amount,
        new_price.amount,
        subscription.current_period_start,
        subscription.current_period_end,
        now,
    )

    if not is_upgrade(old_price, new_price, subscription.interval, interval):
        return await run_behavior(
            ctx,
            "on_downgrade",
            OnDowngradeParams(
                subscription=subscription,
                customer=customer,
                previous_plan=old_plan,
                new_plan=new_plan,
                new_interval=interval,
                credit_amount=proration.credit,
            ),
        )

    # Nothing has been paid during a trial, so there is nothing to prorate
    if subscription.status == SubscriptionStatus.TRIALING:
        updated = await repository.update_subscription(
            subscription.id,
            plan_code=new_plan.code,
            interval=interval,
            scheduled_plan_code=None,
            scheduled_interval=None,
        )
        logger.info(f"Trial {subscription.id} switched to {new_plan.code}")
        return ChangeSubscriptionResult(
            subscription=updated,
            previous_plan=old_plan,
            new_plan=new_plan,
            change_type="upgrade",
        )

    # An unpaid, lapsed period has no unused value; the new plan starts a fresh one
    lapsed = subscription.current_period_end <= now
    amount = new_price.amount if lapsed else (proration.net_amount if prorate else 0)

    payment = None
    if amount > 0:
        ctx.payment_adapter.require(Capability.CHARGE)
        if not customer.provider_customer_id:
            raise PreconditionError("No payment method on file", "NO_PAYMENT_METHOD")

        payment = await charge_once(
            ctx,
            customer,
            PaymentType.UPGRADE,
            amount=amount,
            currency=new_price.currency,
            idempotency_key=charge_key(
                PaymentType.UPGRADE,
                subscription.id,
                new_plan.code,
                interval.value,
                subscription.current_period_start.isoformat(),
            ),
            description=f"Upgrade: {old_plan.name if old_plan else subscription.plan_code} -> {new_plan.name}",
            subscription_id=subscription.id,
            metadata={
                "from_plan": subscription.plan_code,
                "to_plan": new_plan.code,
                "credit": 0 if lapsed else proration.credit,
                "charge": amount if lapsed else proration.charge,
                "period_lapsed": lapsed,
            },
        )
        if payment.status == PaymentStatus.FAILED:
            error = payment.metadata.get("error")
            logger.warning(f"Upgrade charge for subscription {subscription.id} failed: {error}")
            raise ProviderError(error or "Charge failed", "CHARGE_FAILED")

    # Paying for the new plan settles a past_due subscription
    period_start, period_end = calculate_next_period(now, interval)
    updated = await transition(
        repository,
        subscription,
        SubscriptionStatus.ACTIVE,
        plan_code=new_plan.code,
        interval=interval,
        current_period_start=period_start,
        current_period_end=period_end,
        scheduled_plan_code=None,
        scheduled_interval=None,
    )
    logger.info(
        f"Subscription {subscription.id} upgraded {subscription.plan_code} -> {new_plan.code}, "
        f"charged {payment.amount if payment else 0}"
    )

    return ChangeSubscriptionResult(
        subscription=updated,
        previous_plan=old_plan,
        new_plan=new_plan,
        change_type="upgrade",
        proration=proration,
        payment=payment,
    )


async def get_subscription(ctx: BillingContext, customer_id: str) -> Optional[SubscriptionView]:
    customer = await require_customer(ctx, customer_id)
    subscription = await ctx.repository.find_live_subscription(customer.id)
    if subscription is None:
        return None

    return SubscriptionView(
        subscription=subscription,
        plan=ctx.repository.find_plan(subscription.plan_code),
        price=ctx.repository.get_plan_price(subscription.plan_code, subscription.interval),
    )
