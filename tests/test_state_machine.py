import pytest

from billkit.core.exceptions import PreconditionError
from billkit.schemas.billing import SubscriptionStatus as S
from billkit.services.state_machine import can_transition, cancel_now, transition


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING_PAYMENT, S.ACTIVE),
        (S.PENDING_PAYMENT, S.TRIALING),
        (S.PENDING_PAYMENT, S.CANCELED),
        (S.TRIALING, S.ACTIVE),
        (S.TRIALING, S.CANCELED),
        (S.ACTIVE, S.PAST_DUE),
        (S.ACTIVE, S.CANCELED),
        (S.PAST_DUE, S.ACTIVE),
        (S.PAST_DUE, S.CANCELED),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.CANCELED, S.ACTIVE),
        (S.CANCELED, S.PENDING_PAYMENT),
        (S.ACTIVE, S.TRIALING),
        (S.ACTIVE, S.PENDING_PAYMENT),
        (S.TRIALING, S.PAST_DUE),
        (S.PAST_DUE, S.TRIALING),
    ],
)
def test_forbidden_transitions(current, target):
    assert not can_transition(current, target)


def test_same_status_is_allowed():
    assert can_transition("active", "active")


async def test_transition_persists_status_and_fields(repository, customer, start):
    subscription = await repository.create_subscription(
        customer.id, "basic", "monthly", S.PENDING_PAYMENT, start, start
    )

    updated = await transition(repository, subscription, S.ACTIVE, provider_subscription_id="sub_1")

    assert updated.status == S.ACTIVE
    assert updated.provider_subscription_id == "sub_1"
    stored = await repository.find_subscription_by_id(subscription.id)
    assert stored.status == S.ACTIVE


async def test_illegal_transition_is_rejected_without_writing(repository, customer, start):
    subscription = await repository.create_subscription(customer.id, "basic", "monthly", S.CANCELED, start, start)

    with pytest.raises(PreconditionError) as exc_info:
        await transition(repository, subscription, S.ACTIVE)

    assert exc_info.value.code == "INVALID_TRANSITION"
    stored = await repository.find_subscription_by_id(subscription.id)
    assert stored.status == S.CANCELED


async def test_cancel_now_clears_scheduled_change(repository, customer, start):
    subscription = await repository.create_subscription(customer.id, "pro", "monthly", S.ACTIVE, start, start)
    subscription = await repository.update_subscription(subscription.id, scheduled_plan_code="basic")

    canceled = await cancel_now(repository, subscription, start)

    assert canceled.status == S.CANCELED
    assert canceled.canceled_at == start
    assert canceled.scheduled_plan_code is None
    # Canceling twice is a no-op
    assert (await cancel_now(repository, canceled, start)).status == S.CANCELED
