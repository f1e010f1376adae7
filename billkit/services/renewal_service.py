# billkit/services/renewal_service.py
"""
Batch renewal processor.

Selects active and past_due subscriptions whose period has ended and
renews each one in turn. The period end only moves forward after the
charge succeeded, so a second run before the next boundary finds nothing
to do for the rows it already renewed.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from ..core.context import BillingContext
from ..core.exceptions import customer_not_found
from ..payments.base import Capability
from ..schemas.behaviors import OnPaymentFailedParams
from ..schemas.billing import (
    BillingInterval,
    Customer,
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionStatus,
)
from ..schemas.results import PlanChange, ProcessRenewalsResult, RenewalDetail
from .behaviors import run_behavior
from .charges import charge_key, charge_once
from .periods import calculate_next_period
from .state_machine import cancel_now, transition

logger = logging.getLogger(__name__)

RENEWABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
NO_PAYMENT_METHOD = "No payment method on file"
CANNOT_CHARGE = "Payment adapter does not support direct charging"


def _scheduled_change(subscription: Subscription) -> Tuple[str, BillingInterval, Optional[PlanChange]]:
    if not subscription.scheduled_plan_code:
        return subscription.plan_code, subscription.interval, None

    plan_code = subscription.scheduled_plan_code
    interval = BillingInterval(subscription.scheduled_interval or subscription.interval)
    return plan_code, interval, PlanChange(from_plan=subscription.plan_code, to_plan=plan_code)


def _charge_blocker(ctx: BillingContext, customer: Customer, amount: int) -> Optional[str]:
    """Why a renewal of ``amount`` could not be charged, or None"""
    if amount == 0:
        return None
    if not customer.provider_customer_id:
        return NO_PAYMENT_METHOD
    if not ctx.payment_adapter.supports(Capability.CHARGE):
        return CANNOT_CHARGE
    return None


async def _payment_failed(
    ctx: BillingContext,
    subscription: Subscription,
    customer: Customer,
    error: str,
) -> None:
    logger.warning(f"Renewal of subscription {subscription.id} failed: {error}")
    await run_behavior(
        ctx,
        "on_payment_failed",
        OnPaymentFailedParams(subscription=subscription, customer=customer, error=error),
    )


async def renew_subscription(
    ctx: BillingContext,
    subscription: Subscription,
    dry_run: bool = False,
) -> RenewalDetail:
    """Renew one due subscription; the caller holds the customer's lock"""
    repository = ctx.repository

    customer = await repository.find_customer_by_id(subscription.customer_id)
    if customer is None:
        return RenewalDetail(
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            status="failed",
            error="Customer not found",
        )

    # Re-read under the lock; another worker may have renewed it meanwhile
    current = await repository.find_subscription_by_id(subscription.id)
    now = await ctx.now(customer.external_id)
    if (
        current is None
        or current.status not in RENEWABLE_STATUSES
        or current.current_period_end > now
    ):
        return RenewalDetail(
            subscription_id=subscription.id,
            customer_id=customer.external_id,
            status="skipped",
            reason="not_due",
        )
    subscription = current

    detail = dict(subscription_id=subscription.id, customer_id=customer.external_id)

    if subscription.cancel_at is not None and subscription.cancel_at <= now:
        if not dry_run:
            await cancel_now(repository, subscription, now)
            logger.info(f"Subscription {subscription.id} reached its scheduled cancellation")
        return RenewalDetail(**detail, status="skipped", reason="canceled_at_period_end")

    plan_code, interval, plan_change = _scheduled_change(subscription)
    detail["plan_changed"] = plan_change

    price = repository.get_plan_price(plan_code, interval)
    if price is None:
        return RenewalDetail(
            **detail,
            status="failed",
            error=f"No price found for plan {plan_code} with interval {interval.value}",
        )

    blocker = _charge_blocker(ctx, customer, price.amount)
    if dry_run:
        if blocker is not None:
            return RenewalDetail(**detail, status="failed", error=blocker)
        return RenewalDetail(**detail, status="succeeded", amount=price.amount)

    # Key on the period being paid for, before it moves
    charge_idempotency_key = charge_key(
        PaymentType.RENEWAL, subscription.id, subscription.current_period_end.isoformat()
    )

    if plan_change is not None:
        subscription = await repository.update_subscription(
            subscription.id,
            plan_code=plan_code,
            interval=interval,
            scheduled_plan_code=None,
            scheduled_interval=None,
        )
        logger.info(
            f"Applied scheduled change on {subscription.id}: {plan_change.from_plan} -> {plan_change.to_plan}"
        )

    if price.amount == 0:
        period_start, period_end = calculate_next_period(now, interval)
        await transition(
            repository,
            subscription,
            SubscriptionStatus.ACTIVE,
            current_period_start=period_start,
            current_period_end=period_end,
        )
        logger.info(f"Free renewal of {subscription.id} until {period_end.isoformat()}")
        return RenewalDetail(**detail, status="succeeded", amount=0)

    if blocker == NO_PAYMENT_METHOD:
        await _payment_failed(ctx, subscription, customer, blocker)
        return RenewalDetail(**detail, status="failed", error=blocker)

    if blocker is not None:
        logger.error(f"Payment adapter {ctx.payment_adapter.id} cannot charge; renewal of {subscription.id} skipped")
        return RenewalDetail(**detail, status="failed", error=blocker)

    plan = repository.find_plan(plan_code)
    payment = await charge_once(
        ctx,
        customer,
        PaymentType.RENEWAL,
        amount=price.amount,
        currency=price.currency,
        idempotency_key=charge_idempotency_key,
        description=f"Renewal: {plan.name if plan else plan_code} ({interval.value})",
        subscription_id=subscription.id,
        metadata={"plan_code": plan_code, "interval": interval.value},
    )

    if payment.status == PaymentStatus.FAILED:
        error = payment.metadata.get("error") or "Charge failed"
        await _payment_failed(ctx, subscription, customer, error)
        return RenewalDetail(**detail, status="failed", error=error)

    period_start, period_end = calculate_next_period(now, interval)
    await transition(
        repository,
        subscription,
        SubscriptionStatus.ACTIVE,
        current_period_start=period_start,
        current_period_end=period_end,
    )
    logger.info(f"Renewed {subscription.id} for {payment.amount} until {period_end.isoformat()}")
    return RenewalDetail(**detail, status="succeeded", amount=payment.amount)


async def process_renewals(
    ctx: BillingContext,
    customer_id: Optional[str] = None,
    dry_run: bool = False,
    limit: Optional[int] = None,
) -> ProcessRenewalsResult:
    """
    Renew every subscription whose period has ended.

    ``customer_id`` (the host's id) narrows the run to one customer, which
    also makes that customer's simulated clock the reference time.
    """
    repository = ctx.repository
    logger.info(f"Starting renewal run (customer={customer_id}, dry_run={dry_run}, limit={limit})")

    internal_customer_id = None
    if customer_id is not None:
        customer = await repository.find_customer_by_external_id(customer_id)
        if customer is None:
            raise customer_not_found(customer_id)
        internal_customer_id = customer.id

    now: datetime = await ctx.now(customer_id)
    due = await repository.find_subscriptions_due(
        "current_period_end",
        now,
        RENEWABLE_STATUSES,
        customer_id=internal_customer_id,
        limit=limit,
    )
    logger.info(f"Found {len(due)} subscriptions due for renewal")

    result = ProcessRenewalsResult()
    for subscription in due:
        try:
            customer = await repository.find_customer_by_id(subscription.customer_id)
            lock_key = customer.external_id if customer else subscription.customer_id
            async with ctx.lock.hold(lock_key):
                detail = await renew_subscription(ctx, subscription, dry_run=dry_run)
        except Exception as e:
            logger.error(f"Error renewing subscription {subscription.id}: {str(e)}", exc_info=True)
            detail = RenewalDetail(
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                status="failed",
                error=str(e),
            )
        result.record(detail)

    logger.info(
        f"Renewal run complete: processed={result.processed} succeeded={result.succeeded} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    return result
