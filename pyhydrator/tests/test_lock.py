import asyncio

import pytest

from pyhydrator.exceptions import LockTimeout
from pyhydrator.lock import HydrationLock


@pytest.mark.asyncio
async def test_waiters_acquire_in_arrival_order():
    lock = HydrationLock()
    order = []

    async def worker(name):
        async with lock.hold(owner=name):
            order.append(name)
            await asyncio.sleep(0.01)

    await lock.acquire("first")
    tasks = [asyncio.ensure_future(worker(n)) for n in ("a", "b", "c")]
    await asyncio.sleep(0.01)
    assert lock.waiting == 3
    lock.release()
    await asyncio.gather(*tasks)

    assert order == ["a", "b", "c"]
    assert not lock.locked


@pytest.mark.asyncio
async def test_only_one_holder_at_a_time():
    lock = HydrationLock()
    active = []
    peak = []

    async def worker():
        async with lock.hold():
            active.append(1)
            peak.append(len(active))
            await asyncio.sleep(0.005)
            active.pop()

    await asyncio.gather(*[worker() for _ in range(10)])
    assert max(peak) == 1


@pytest.mark.asyncio
async def test_acquire_timeout():
    lock = HydrationLock()
    await lock.acquire("holder")
    with pytest.raises(LockTimeout):
        await lock.acquire("late", timeout=0.05)
    assert lock.waiting == 0
    lock.release()
    assert not lock.locked


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_block_the_queue():
    lock = HydrationLock()
    await lock.acquire("holder")
    cancelled = asyncio.ensure_future(lock.acquire("cancelled"))
    patient = asyncio.ensure_future(lock.acquire("patient"))
    await asyncio.sleep(0.01)
    cancelled.cancel()
    await asyncio.sleep(0)

    lock.release()
    await asyncio.wait_for(patient, 0.5)
    assert lock.locked
    assert lock.owner == "patient"


def test_release_unheld_lock_raises():
    with pytest.raises(RuntimeError):
        HydrationLock().release()
