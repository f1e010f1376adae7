import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from billkit.engine import create_billing
from billkit.tasks import renewals


@pytest.fixture
def worker_billing(options, storage, payments, clock, monkeypatch):
    billing = create_billing(options, storage=storage, payment_adapter=payments, clock=clock)
    db_engine = MagicMock()
    db_engine.dispose = AsyncMock()

    monkeypatch.setattr(renewals, "create_engine", lambda: db_engine)
    monkeypatch.setattr(renewals, "create_billing_from_settings", lambda db_engine=None: billing)
    return billing, db_engine


def test_renewal_task_returns_json_summary(worker_billing, clock):
    billing, db_engine = worker_billing

    async def subscribe():
        await billing.create_customer("user_1", "user1@example.com")
        return await billing.create_subscription("user_1", "basic")

    created = asyncio.run(subscribe())
    clock.set_time(created.subscription.current_period_end + timedelta(hours=1))

    summary = renewals.process_renewals.run()

    assert summary["processed"] == 1
    assert summary["succeeded"] == 1
    assert summary["renewals"][0]["status"] == "succeeded"
    db_engine.dispose.assert_awaited_once()


def test_trial_task_dry_run(worker_billing):
    summary = renewals.process_trial_ends.run(dry_run=True)

    assert summary == {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "renewals": []}


def test_beat_schedule_covers_both_batches():
    scheduled = {entry["task"] for entry in renewals.celery_app.conf.beat_schedule.values()}

    assert scheduled == {
        "billkit.tasks.renewals.process_renewals",
        "billkit.tasks.renewals.process_trial_ends",
    }
