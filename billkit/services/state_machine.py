# billkit/services/state_machine.py
"""
Subscription state machine.

pending_payment -> active | trialing | canceled
trialing        -> active | canceled
active          -> past_due | canceled
past_due        -> active | canceled
canceled        (terminal)

Re-entering the current status is allowed (renewals keep an active
subscription active while moving its period forward).
"""
import logging
from typing import Dict, FrozenSet

from ..core.exceptions import PreconditionError
from ..schemas.billing import LIVE_STATUSES, Subscription, SubscriptionStatus
from ..storage.repository import BillingRepository

logger = logging.getLogger(__name__)

S = SubscriptionStatus

CANCELED_BEFORE_PAYMENT = "canceled_before_payment"

TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.ACTIVE, S.TRIALING, S.CANCELED}),
    S.TRIALING: frozenset({S.ACTIVE, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    current, target = SubscriptionStatus(current), SubscriptionStatus(target)
    return current == target or target in TRANSITIONS[current]


def assert_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> None:
    if not can_transition(current, target):
        raise PreconditionError(
            f"Cannot move subscription from {SubscriptionStatus(current).value} "
            f"to {SubscriptionStatus(target).value}",
            "INVALID_TRANSITION",
        )


async def transition(
    repository: BillingRepository,
    subscription: Subscription,
    target: SubscriptionStatus,
    **fields,
) -> Subscription:
    """Validate and persist a status change together with any other field updates"""
    assert_transition(subscription.status, target)

    updated = await repository.update_subscription(subscription.id, status=target, **fields)
    if updated is None:
        raise PreconditionError(f"Subscription {subscription.id} disappeared during update")

    if subscription.status != target:
        logger.info(
            f"Subscription {subscription.id}: {subscription.status.value} -> {SubscriptionStatus(target).value}"
        )
    return updated


async def cancel_now(repository: BillingRepository, subscription: Subscription, now) -> Subscription:
    """Immediate cancellation; a no-op for an already canceled subscription"""
    if subscription.status == SubscriptionStatus.CANCELED:
        return subscription

    fields = {}
    # Its checkout may still be paid later; the webhook needs to tell that apart
    if subscription.status == SubscriptionStatus.PENDING_PAYMENT:
        fields["metadata"] = {**subscription.metadata, CANCELED_BEFORE_PAYMENT: True}

    return await transition(
        repository,
        subscription,
        SubscriptionStatus.CANCELED,
        canceled_at=now,
        cancel_at=now,
        scheduled_plan_code=None,
        scheduled_interval=None,
        **fields,
    )


async def cancel_live_siblings(
    repository: BillingRepository,
    subscription: Subscription,
    now,
) -> int:
    """
    Cancel every other live subscription of the same customer.

    Runs right before a subscription is activated, so activation never
    fails because of an older subscription and at most one live row remains.
    """
    siblings = await repository.list_subscriptions(subscription.customer_id, LIVE_STATUSES)
    canceled = 0
    for sibling in siblings:
        if sibling.id == subscription.id:
            continue
        await cancel_now(repository, sibling, now)
        logger.info(f"Canceled previous subscription {sibling.id} ({sibling.plan_code})")
        canceled += 1
    return canceled
