"""
HTTP surface tests against an app wrapping the in-memory engine.
"""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from billkit.core.config import settings
from billkit.main import create_app

PREFIX = settings.API_PREFIX


@pytest.fixture
def client(billing):
    return TestClient(create_app(billing))


@pytest.fixture
def signed_up(client):
    response = client.post(f"{PREFIX}/customers", json={"external_id": "user_1", "email": "user1@example.com"})
    assert response.status_code == 200
    return response.json()["customer"]


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get(f"{PREFIX}/health").status_code == 200


def test_create_customer_twice(client, signed_up):
    response = client.post(f"{PREFIX}/customers", json={"external_id": "user_1", "email": "user1@example.com"})

    assert response.json()["created"] is False
    assert response.json()["customer"]["id"] == signed_up["id"]


def test_invalid_customer_payload(client):
    response = client.post(f"{PREFIX}/customers", json={"external_id": "user_1"})

    assert response.status_code == 422


def test_unknown_customer_is_404(client):
    response = client.get(f"{PREFIX}/customers/nobody")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "CUSTOMER_NOT_FOUND"


def test_plans(client):
    codes = [p["code"] for p in client.get(f"{PREFIX}/plans").json()["plans"]]

    assert "basic" in codes
    assert "legacy" not in codes
    assert client.get(f"{PREFIX}/plans/legacy").json()["plan"]["is_public"] is False
    assert client.get(f"{PREFIX}/plans/platinum").status_code == 404


class TestSubscriptionRoutes:
    def test_subscribe_and_read_back(self, client, signed_up):
        created = client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "basic"})

        assert created.status_code == 200
        assert created.json()["subscription"]["status"] == "active"

        current = client.get(f"{PREFIX}/subscriptions/user_1").json()
        assert current["plan"]["code"] == "basic"
        assert current["price"]["amount"] == 2000

    def test_no_subscription(self, client, signed_up):
        assert client.get(f"{PREFIX}/subscriptions/user_1").json()["subscription"] is None

    def test_change_cancel_resume(self, client, signed_up, clock):
        client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "basic"})
        clock.advance(timedelta(days=16))

        changed = client.post(f"{PREFIX}/subscriptions/change", json={"customer_id": "user_1", "plan_code": "pro"})
        assert changed.json()["proration"]["net_amount"] == 1451

        canceled = client.post(f"{PREFIX}/subscriptions/cancel", json={"customer_id": "user_1"})
        assert canceled.json()["canceled_immediately"] is False

        resumed = client.post(f"{PREFIX}/subscriptions/resume", json={"customer_id": "user_1"})
        assert resumed.json()["subscription"]["cancel_at"] is None

    def test_same_plan_change_is_400(self, client, signed_up):
        client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "basic"})

        response = client.post(f"{PREFIX}/subscriptions/change", json={"customer_id": "user_1", "plan_code": "basic"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "ALREADY_ON_PLAN"

    def test_failed_payment_is_402(self, client, signed_up, payments):
        payments.payment_status = "failed"

        response = client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "pro"})

        assert response.status_code == 402


class TestPaymentRoutes:
    def test_history_and_refund(self, client, signed_up):
        client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "basic"})
        payments = client.get(f"{PREFIX}/payments", params={"customer_id": "user_1"}).json()["payments"]
        assert len(payments) == 1

        refund = client.post(f"{PREFIX}/refunds", json={"payment_id": payments[0]["id"], "amount": 500})

        assert refund.status_code == 200
        assert refund.json()["refund"]["amount"] == -500
        payment = client.get(f"{PREFIX}/payments/{payments[0]['id']}").json()["payment"]
        assert payment["refunded_amount"] == 500

    def test_refund_over_remainder_is_400(self, client, signed_up):
        client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "basic"})
        payment_id = client.get(f"{PREFIX}/payments", params={"customer_id": "user_1"}).json()["payments"][0]["id"]

        response = client.post(f"{PREFIX}/refunds", json={"payment_id": payment_id, "amount": 5000})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "REFUND_EXCEEDS_REMAINING"

    def test_features(self, client, signed_up):
        client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "basic"})

        check = client.get(f"{PREFIX}/features/check", params={"customer_id": "user_1", "feature": "export"})
        features = client.get(f"{PREFIX}/features", params={"customer_id": "user_1"}).json()["features"]

        assert check.json() == {"allowed": True}
        assert [f["code"] for f in features] == ["reports", "export"]

    def test_renewal_dry_run(self, client, signed_up, clock):
        client.post(f"{PREFIX}/subscriptions", json={"customer_id": "user_1", "plan_code": "basic"})
        clock.advance(timedelta(days=31))

        result = client.get(f"{PREFIX}/renewals", params={"dry_run": "true"}).json()

        assert result["processed"] == 1
        assert result["renewals"][0]["amount"] == 2000

    def test_webhook_without_confirmation_support(self, client):
        response = client.post(f"{PREFIX}/webhook", content=b"{}")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "CAPABILITY_NOT_SUPPORTED"
