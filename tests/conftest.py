"""
Shared fixtures: an in-memory engine on a simulated clock with the mock
payment adapter and a small plan catalogue, plus SQLite-backed storage.
"""
from datetime import datetime, timezone

import pytest

from billkit.core.config import BillingBehaviors, BillingOptions, FeatureConfig, PlanConfig, PriceConfig
from billkit.core.database import create_engine, create_session_factory, create_tables
from billkit.core.time import SimulatedTimeProvider
from billkit.engine import create_billing
from billkit.payments.mock import MockPaymentAdapter
from billkit.schemas.billing import BillingInterval, SubscriptionStatus
from billkit.storage.base import SUBSCRIPTION
from billkit.storage.memory import MemoryStorageAdapter
from billkit.storage.sql import SQLAlchemyStorageAdapter

START = datetime(2025, 1, 1, tzinfo=timezone.utc)

PLANS = [
    PlanConfig(
        code="free",
        name="Free",
        features=["reports"],
        prices=[PriceConfig(amount=0, interval=BillingInterval.MONTHLY)],
    ),
    PlanConfig(
        code="basic",
        name="Basic",
        features=["reports", "export"],
        prices=[
            PriceConfig(amount=2000, interval=BillingInterval.MONTHLY),
            PriceConfig(amount=20000, interval=BillingInterval.YEARLY),
        ],
    ),
    PlanConfig(
        code="pro",
        name="Pro",
        features=["reports", "export", "api_access"],
        prices=[
            PriceConfig(amount=5000, interval=BillingInterval.MONTHLY),
            PriceConfig(amount=50000, interval=BillingInterval.YEARLY),
        ],
    ),
    PlanConfig(
        code="team",
        name="Team",
        features=["reports", "export"],
        prices=[PriceConfig(amount=3000, interval=BillingInterval.MONTHLY, trial_days=14)],
    ),
    PlanConfig(
        code="legacy",
        name="Legacy",
        is_public=False,
        prices=[PriceConfig(amount=1000, interval=BillingInterval.MONTHLY)],
    ),
]

FEATURES = [
    FeatureConfig(code="reports", name="Reports"),
    FeatureConfig(code="export", name="CSV export"),
    FeatureConfig(code="api_access", name="API access"),
]


@pytest.fixture
def clock():
    return SimulatedTimeProvider(START)


@pytest.fixture
def storage():
    return MemoryStorageAdapter()


class FlakyStorage(MemoryStorageAdapter):
    """Memory storage whose next subscription period update can be made to fail once"""

    def __init__(self):
        super().__init__()
        self.fail_next_period_update = False

    async def update(self, model, where, update):
        if self.fail_next_period_update and model == SUBSCRIPTION and "current_period_end" in update:
            self.fail_next_period_update = False
            raise RuntimeError("storage unavailable")
        return await super().update(model, where, update)


@pytest.fixture
def flaky_storage():
    return FlakyStorage()


@pytest.fixture
def payments():
    return MockPaymentAdapter()


@pytest.fixture
def behaviors():
    return BillingBehaviors()


@pytest.fixture
def options(behaviors):
    return BillingOptions(plans=PLANS, features=FEATURES, behaviors=behaviors)


@pytest.fixture
def billing(options, storage, payments, clock):
    return create_billing(options, storage=storage, payment_adapter=payments, clock=clock)


@pytest.fixture
def repository(billing):
    return billing.repository


@pytest.fixture
async def customer(billing):
    result = await billing.create_customer("user_1", "user1@example.com", name="User One")
    return result.customer


@pytest.fixture
async def subscribed(billing, customer):
    """user_1 on basic/monthly, paid through the mock adapter"""
    result = await billing.create_subscription("user_1", "basic")
    assert result.subscription.status == SubscriptionStatus.ACTIVE
    return result.subscription


@pytest.fixture
def start():
    return START


@pytest.fixture
async def sql_storage(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)
    await create_tables(engine)
    yield SQLAlchemyStorageAdapter(create_session_factory(engine))
    await engine.dispose()
