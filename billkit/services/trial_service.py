# billkit/services/trial_service.py
import logging
from typing import Optional

from ..core.context import BillingContext
from ..core.exceptions import PreconditionError, customer_not_found, subscription_not_found
from ..schemas.behaviors import OnTrialEndParams
from ..schemas.billing import SubscriptionStatus
from ..schemas.results import ProcessRenewalsResult, RenewalDetail, TrialEndResult
from .behaviors import run_behavior

logger = logging.getLogger(__name__)


async def handle_trial_end(ctx: BillingContext, subscription_id: str) -> TrialEndResult:
    """Run the trial-end hook for one trialing subscription"""
    repository = ctx.repository

    subscription = await repository.find_subscription_by_id(subscription_id)
    if subscription is None:
        raise subscription_not_found(f"Subscription not found: {subscription_id}")
    if subscription.status != SubscriptionStatus.TRIALING:
        raise PreconditionError(
            f"Subscription {subscription_id} is not trialing ({subscription.status.value})",
            "INVALID_TRANSITION",
        )

    customer = await repository.find_customer_by_id(subscription.customer_id)
    if customer is None:
        raise customer_not_found(subscription.customer_id)

    logger.info(f"Processing trial end for {subscription.id} ({subscription.plan_code})")
    return await run_behavior(
        ctx,
        "on_trial_end",
        OnTrialEndParams(
            subscription=subscription,
            customer=customer,
            plan=repository.find_plan(subscription.plan_code),
        ),
    )


async def process_trial_ends(
    ctx: BillingContext,
    customer_id: Optional[str] = None,
    dry_run: bool = False,
    limit: Optional[int] = None,
) -> ProcessRenewalsResult:
    """Run the trial-end hook for every trial that has run out"""
    repository = ctx.repository

    internal_customer_id = None
    if customer_id is not None:
        customer = await repository.find_customer_by_external_id(customer_id)
        if customer is None:
            raise customer_not_found(customer_id)
        internal_customer_id = customer.id

    now = await ctx.now(customer_id)
    due = await repository.find_subscriptions_due(
        "trial_end",
        now,
        [SubscriptionStatus.TRIALING],
        customer_id=internal_customer_id,
        limit=limit,
    )
    logger.info(f"Found {len(due)} trials that have ended")

    result = ProcessRenewalsResult()
    for subscription in due:
        detail = dict(subscription_id=subscription.id, customer_id=subscription.customer_id)
        try:
            customer = await repository.find_customer_by_id(subscription.customer_id)
            if customer is None:
                result.record(RenewalDetail(**detail, status="failed", error="Customer not found"))
                continue
            detail["customer_id"] = customer.external_id

            if dry_run:
                outcome = "convert" if customer.provider_customer_id else "cancel"
                result.record(RenewalDetail(**detail, status="skipped", reason=f"dry_run:{outcome}"))
                continue

            async with ctx.lock.hold(customer.external_id):
                trial = await handle_trial_end(ctx, subscription.id)
            converted = getattr(trial, "converted", None)
            reason = None if converted is None else ("converted" if converted else "canceled")
            result.record(RenewalDetail(**detail, status="succeeded", reason=reason))
        except Exception as e:
            logger.error(f"Error ending trial {subscription.id}: {str(e)}", exc_info=True)
            result.record(RenewalDetail(**detail, status="failed", error=str(e)))

    logger.info(
        f"Trial-end run complete: processed={result.processed} succeeded={result.succeeded} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    return result
