import asyncio

import pytest

from billkit.core.exceptions import ConcurrencyError
from billkit.core.locks import CustomerLock, LocalCustomerLock


class TestLocalCustomerLock:
    async def test_serializes_same_customer(self):
        lock = LocalCustomerLock()
        events = []

        async def worker(name):
            async with lock.hold("user_1"):
                events.append(f"{name}:start")
                await asyncio.sleep(0.01)
                events.append(f"{name}:end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (
            ["a:start", "a:end", "b:start", "b:end"],
            ["b:start", "b:end", "a:start", "a:end"],
        )

    async def test_different_customers_run_concurrently(self):
        lock = LocalCustomerLock(timeout=1)
        inside = asyncio.Event()

        async def first():
            async with lock.hold("user_1"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with lock.hold("user_2"):
                inside.set()

        await asyncio.gather(first(), second())

    async def test_reentrant_within_one_task(self):
        lock = LocalCustomerLock(timeout=0.1)

        async with lock.hold("user_1"):
            async with lock.hold("user_1"):
                pass

        # Released after the outer block
        async with lock.hold("user_1"):
            pass

    async def test_times_out(self):
        lock = LocalCustomerLock(timeout=0.05)
        release = asyncio.Event()

        async def holder():
            async with lock.hold("user_1"):
                await release.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)

        with pytest.raises(ConcurrencyError) as exc_info:
            async with lock.hold("user_1"):
                pass

        assert exc_info.value.status_code == 409
        release.set()
        await task

    async def test_released_after_error(self):
        lock = LocalCustomerLock(timeout=0.1)

        with pytest.raises(RuntimeError):
            async with lock.hold("user_1"):
                raise RuntimeError("boom")

        async with lock.hold("user_1"):
            pass

    async def test_entries_are_dropped_once_released(self):
        lock = LocalCustomerLock(timeout=1)

        async def worker(customer_id):
            async with lock.hold(customer_id):
                await asyncio.sleep(0.01)

        await asyncio.gather(*(worker(f"user_{n % 3}") for n in range(9)))

        assert lock._locks == {}
        assert lock._users == {}

    async def test_timed_out_waiter_keeps_the_holders_entry(self):
        lock = LocalCustomerLock(timeout=0.05)
        release = asyncio.Event()

        async def holder():
            async with lock.hold("user_1"):
                await release.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)

        with pytest.raises(ConcurrencyError):
            async with lock.hold("user_1"):
                pass

        assert "user_1" in lock._locks
        release.set()
        await task
        assert lock._locks == {}


def test_lock_backends_must_implement_acquire_and_release():
    class HalfLock(CustomerLock):
        async def _acquire(self, customer_id):
            pass

    with pytest.raises(TypeError):
        HalfLock()


async def test_concurrent_creates_leave_one_live_subscription(billing, customer, repository):
    await asyncio.gather(
        billing.create_subscription("user_1", "basic"),
        billing.create_subscription("user_1", "pro"),
    )

    subscriptions = await repository.list_subscriptions(customer.id)
    live = [s for s in subscriptions if s.status.value != "canceled"]
    assert len(subscriptions) == 2
    assert len(live) == 1
