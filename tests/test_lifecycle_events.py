"""
Tests for trial expiry and externally reported payment failures.
"""
from datetime import timedelta

import pytest

from billkit.core.exceptions import NotFoundError, PreconditionError
from billkit.schemas.billing import PaymentType, SubscriptionStatus


@pytest.fixture
async def trial(billing, customer):
    result = await billing.create_subscription("user_1", "team")
    assert result.subscription.status == SubscriptionStatus.TRIALING
    return result.subscription


class TestTrialEnds:
    async def test_trial_with_payment_method_converts(self, billing, trial, clock):
        clock.set_time(trial.trial_end)

        result = await billing.process_trial_ends()

        assert result.succeeded == 1
        assert result.renewals[0].reason == "converted"
        view = await billing.get_subscription("user_1")
        assert view.subscription.status == SubscriptionStatus.ACTIVE
        assert view.subscription.current_period_end == trial.trial_end

    async def test_converted_trial_is_billed_by_next_renewal(self, billing, trial, clock, payments, customer, repository):
        clock.set_time(trial.trial_end)
        await billing.process_trial_ends()

        renewals = await billing.process_renewals()

        assert renewals.succeeded == 1
        assert [c.amount for c in payments.calls_to("charge")] == [3000]
        history = await repository.list_payments(customer.id)
        assert [p.type for p in history] == [PaymentType.RENEWAL]

    async def test_trial_without_payment_method_is_canceled(self, billing, customer, repository, clock, start):
        subscription = await repository.create_subscription(
            customer.id,
            "team",
            "monthly",
            SubscriptionStatus.TRIALING,
            start,
            start + timedelta(days=14),
            trial_start=start,
            trial_end=start + timedelta(days=14),
        )
        clock.advance(timedelta(days=15))

        result = await billing.process_trial_ends()

        assert result.renewals[0].reason == "canceled"
        stored = await repository.find_subscription_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.CANCELED

    async def test_trial_scheduled_to_cancel_is_canceled(self, billing, trial, clock, repository):
        await billing.cancel_subscription("user_1")
        clock.set_time(trial.trial_end)

        result = await billing.process_trial_ends()

        assert result.renewals[0].reason == "canceled"
        assert (await repository.find_subscription_by_id(trial.id)).status == SubscriptionStatus.CANCELED

    async def test_dry_run_predicts_outcome(self, billing, trial, clock):
        clock.set_time(trial.trial_end)

        result = await billing.process_trial_ends(dry_run=True)

        assert result.skipped == 1
        assert result.renewals[0].reason == "dry_run:convert"
        view = await billing.get_subscription("user_1")
        assert view.subscription.status == SubscriptionStatus.TRIALING

    async def test_running_trials_are_left_alone(self, billing, trial, clock):
        clock.set_time(trial.trial_end - timedelta(hours=1))

        assert (await billing.process_trial_ends()).processed == 0

    async def test_handle_trial_end_requires_trialing(self, billing, subscribed):
        with pytest.raises(PreconditionError) as exc_info:
            await billing.handle_trial_end(subscribed.id)

        assert exc_info.value.code == "INVALID_TRANSITION"

    async def test_handle_trial_end_directly(self, billing, trial):
        result = await billing.handle_trial_end(trial.id)

        assert result.converted is True
        assert result.subscription.status == SubscriptionStatus.ACTIVE


class TestPaymentFailed:
    async def test_active_subscription_becomes_past_due(self, billing, subscribed):
        result = await billing.handle_payment_failed(subscribed.id, error="Insufficient funds")

        assert result.subscription.status == SubscriptionStatus.PAST_DUE
        # Past due still counts as the customer's current subscription
        view = await billing.get_subscription("user_1")
        assert view.subscription.id == subscribed.id

    async def test_past_due_grants_no_features(self, billing, subscribed):
        await billing.handle_payment_failed(subscribed.id)

        assert (await billing.check_feature("user_1", "export")).allowed is False

    async def test_trialing_subscription_cannot_go_past_due(self, billing, trial):
        with pytest.raises(PreconditionError):
            await billing.handle_payment_failed(trial.id)

    async def test_unknown_subscription(self, billing):
        with pytest.raises(NotFoundError) as exc_info:
            await billing.handle_payment_failed("missing")

        assert exc_info.value.code == "SUBSCRIPTION_NOT_FOUND"
