"""
Storage adapters: the memory backend's query semantics, and a full
subscription lifecycle against the SQLAlchemy backend on SQLite.
"""
from datetime import timedelta

import pytest

from billkit.engine import create_billing
from billkit.schemas.billing import PaymentStatus, SubscriptionStatus
from billkit.storage.base import SortBy, Where, eq
from billkit.storage.memory import MemoryStorageAdapter


@pytest.fixture
async def rows():
    storage = MemoryStorageAdapter()
    for name, score in [("ann", 3), ("bob", None), ("cid", 1), ("dan", 2)]:
        await storage.create("customer", {"external_id": name, "email": f"{name}@example.com", "score": score})
    return storage


class TestMemoryStorage:
    async def test_create_assigns_id(self, rows):
        record = await rows.create("customer", {"external_id": "eve"})

        assert record["id"]
        assert await rows.find_one("customer", [eq("id", record["id"])]) == record

    @pytest.mark.parametrize(
        "where,expected",
        [
            (Where("score", "gt", 1), ["ann", "dan"]),
            (Where("score", "lte", 2), ["cid", "dan"]),
            (Where("score", "ne", 3), ["bob", "cid", "dan"]),
            (Where("external_id", "in", ["ann", "dan", "zed"]), ["ann", "dan"]),
            (Where("email", "starts_with", "b"), ["bob"]),
            (Where("email", "ends_with", "n@example.com"), ["ann", "dan"]),
            (Where("email", "contains", "id@"), ["cid"]),
        ],
    )
    async def test_operators(self, rows, where, expected):
        found = await rows.find_many("customer", [where])

        assert [r["external_id"] for r in found] == expected

    async def test_sort_puts_nulls_last(self, rows):
        ascending = await rows.find_many("customer", sort_by=SortBy("score", "asc"))
        descending = await rows.find_many("customer", sort_by=SortBy("score", "desc"))

        assert [r["external_id"] for r in ascending] == ["cid", "dan", "ann", "bob"]
        assert [r["external_id"] for r in descending] == ["ann", "dan", "cid", "bob"]

    async def test_limit_and_offset(self, rows):
        page = await rows.find_many("customer", sort_by=SortBy("external_id"), limit=2, offset=1)

        assert [r["external_id"] for r in page] == ["bob", "cid"]

    async def test_returned_records_are_copies(self, rows):
        record = await rows.find_one("customer", [eq("external_id", "ann")])
        record["email"] = "changed"

        assert (await rows.find_one("customer", [eq("external_id", "ann")]))["email"] == "ann@example.com"

    async def test_update_and_count(self, rows):
        updated = await rows.update("customer", [eq("external_id", "ann")], {"score": 10})
        changed = await rows.update_many("customer", [Where("score", "lt", 3)], {"score": 0})

        assert updated["score"] == 10
        assert changed == 2
        assert await rows.count("customer", [eq("score", 0)]) == 2
        assert await rows.update("customer", [eq("external_id", "nobody")], {"score": 1}) is None

    async def test_delete(self, rows):
        await rows.delete("customer", [eq("external_id", "ann")])
        removed = await rows.delete_many("customer", [Where("score", "in", [1, 2])])

        assert removed == 2
        assert await rows.count("customer") == 1

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            Where("score", "between", (1, 2))


def customer_row(name, when):
    return {"external_id": name, "email": f"{name}@example.com", "created_at": when, "updated_at": when}


class TestSQLStorage:
    async def test_lifecycle(self, sql_storage, options, payments, clock, start):
        billing = create_billing(options, storage=sql_storage, payment_adapter=payments, clock=clock)

        customer = (await billing.create_customer("user_1", "user1@example.com", metadata={"team": "a"})).customer
        assert (await billing.create_customer("user_1", "user1@example.com")).created is False
        assert customer.metadata == {"team": "a"}

        created = await billing.create_subscription("user_1", "basic")
        assert created.subscription.current_period_end == start + timedelta(days=31)
        assert created.subscription.current_period_end.tzinfo is not None

        clock.set_time(created.subscription.current_period_end)
        renewals = await billing.process_renewals()
        assert renewals.succeeded == 1
        assert (await billing.process_renewals()).processed == 0

        refund = await billing.create_refund(created.payment.id, amount=500)
        assert refund.original_payment.refunded_amount == 500
        assert refund.original_payment.status == PaymentStatus.SUCCEEDED

        history = await billing.list_payments("user_1")
        assert sorted(p.amount for p in history) == [-500, 2000, 2000]

        stored = await billing.repository.find_subscription_by_id(created.subscription.id)
        assert stored.status == SubscriptionStatus.CANCELED

    async def test_filters_and_sorting(self, sql_storage, start):
        for name in ("ann", "bob", "cid"):
            await sql_storage.create("customer", customer_row(name, start))

        found = await sql_storage.find_many(
            "customer",
            [Where("external_id", "in", ["ann", "cid"])],
            sort_by=SortBy("external_id", "desc"),
        )

        assert [r["external_id"] for r in found] == ["cid", "ann"]
        assert await sql_storage.count("customer", [Where("email", "starts_with", "b")]) == 1
        assert await sql_storage.find_one("customer", [eq("external_id", "zed")]) is None

    async def test_update_many_and_delete(self, sql_storage, start):
        for name in ("ann", "bob"):
            await sql_storage.create("customer", customer_row(name, start))

        changed = await sql_storage.update_many("customer", [Where("external_id", "ne", "ann")], {"name": "Bob"})
        await sql_storage.delete("customer", [eq("external_id", "ann")])

        assert changed == 1
        remaining = await sql_storage.find_many("customer")
        assert [(r["external_id"], r["name"]) for r in remaining] == [("bob", "Bob")]
