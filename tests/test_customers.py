from datetime import timedelta

import pytest

from billkit.core.exceptions import NotFoundError
from billkit.schemas.billing import CancelAt


class TestCustomers:
    async def test_create_is_idempotent_on_external_id(self, billing, customer):
        again = await billing.create_customer("user_1", "other@example.com")

        assert again.created is False
        assert again.customer.id == customer.id
        assert again.customer.email == "user1@example.com"

    async def test_get_customer(self, billing, customer):
        found = await billing.get_customer("user_1")

        assert found.id == customer.id
        assert found.name == "User One"

    async def test_unknown_customer(self, billing):
        with pytest.raises(NotFoundError) as exc_info:
            await billing.get_customer("nobody")

        assert exc_info.value.code == "CUSTOMER_NOT_FOUND"
        assert exc_info.value.status_code == 404

    async def test_payment_history_newest_first(self, billing, subscribed, clock):
        clock.advance(timedelta(days=1))
        await billing.change_subscription("user_1", "pro")

        history = await billing.list_payments("user_1")

        assert [p.type.value for p in history] == ["upgrade", "subscription"]
        assert [p.id for p in await billing.list_payments("user_1", limit=1, offset=1)] == [history[1].id]

    async def test_get_payment(self, billing, subscribed):
        payment = (await billing.list_payments("user_1"))[0]

        assert (await billing.get_payment(payment.id)).amount == 2000


class TestPlans:
    def test_public_plans_only_by_default(self, billing):
        codes = [p.code for p in billing.list_plans()]

        assert "legacy" not in codes
        assert {"free", "basic", "pro", "team"} <= set(codes)

    def test_private_plans_on_request(self, billing):
        assert "legacy" in [p.code for p in billing.list_plans(include_private=True)]

    def test_get_plan(self, billing):
        plan = billing.get_plan("basic")

        assert [price.amount for price in plan.prices] == [2000, 20000]
        assert plan.prices[0].currency == "usd"

    def test_unknown_plan(self, billing):
        with pytest.raises(NotFoundError) as exc_info:
            billing.get_plan("platinum")

        assert exc_info.value.code == "PLAN_NOT_FOUND"


class TestFeatures:
    async def test_features_follow_active_plan(self, billing, subscribed):
        assert (await billing.check_feature("user_1", "export")).allowed is True
        assert (await billing.check_feature("user_1", "api_access")).allowed is False

        features = await billing.list_features("user_1")
        assert [(f.code, f.name) for f in features] == [("reports", "Reports"), ("export", "CSV export")]

    async def test_no_subscription_no_features(self, billing, customer):
        assert (await billing.check_feature("user_1", "reports")).allowed is False
        assert await billing.list_features("user_1") == []

    async def test_canceled_subscription_revokes_features(self, billing, subscribed):
        await billing.cancel_subscription("user_1", CancelAt.IMMEDIATELY)

        assert (await billing.check_feature("user_1", "reports")).allowed is False

    async def test_trial_grants_features(self, billing, customer):
        await billing.create_subscription("user_1", "team")

        assert (await billing.check_feature("user_1", "export")).allowed is True
