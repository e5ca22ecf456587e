"""ConcurrencyLimiter: ceiling, FIFO hand-off, release on failure/cancel."""

import asyncio

import pytest

from arena_proxy.limiter import ConcurrencyLimiter
from conftest import settle


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(0)


@pytest.mark.asyncio
async def test_never_exceeds_ceiling_and_admits_fifo():
    limiter = ConcurrencyLimiter(3)
    started = []
    running = {"now": 0, "peak": 0}
    gates = [asyncio.Event() for _ in range(10)]

    async def job(i):
        started.append(i)
        running["now"] += 1
        running["peak"] = max(running["peak"], running["now"])
        try:
            await gates[i].wait()
            return i
        finally:
            running["now"] -= 1

    tasks = [asyncio.ensure_future(limiter.run(lambda i=i: job(i))) for i in range(10)]
    await settle()

    assert started == [0, 1, 2]
    assert limiter.active == 3
    assert limiter.waiting == 7

    # Finish out of order; admission still follows arrival order.
    for i in (2, 0, 1, 5, 3, 4, 8, 6, 7, 9):
        gates[i].set()
        await settle()

    assert await asyncio.gather(*tasks) == list(range(10))
    assert started == list(range(10))
    assert running["peak"] == 3
    assert limiter.active == 0
    assert limiter.waiting == 0


@pytest.mark.asyncio
async def test_slot_released_when_task_fails():
    limiter = ConcurrencyLimiter(1)

    async def boom():
        raise RuntimeError("upstream exploded")

    with pytest.raises(RuntimeError):
        await limiter.run(boom)
    assert limiter.active == 0

    async def ok():
        return "fine"

    assert await asyncio.wait_for(limiter.run(ok), timeout=1) == "fine"


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue():
    limiter = ConcurrencyLimiter(1)
    await limiter.acquire()

    cancelled = asyncio.ensure_future(limiter.acquire())
    survivor = asyncio.ensure_future(limiter.acquire())
    await settle()
    assert limiter.waiting == 2

    cancelled.cancel()
    await settle()
    assert limiter.waiting == 1

    limiter.release()
    await asyncio.wait_for(survivor, timeout=1)
    assert limiter.active == 1
    limiter.release()
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_cancel_after_handoff_passes_slot_on():
    limiter = ConcurrencyLimiter(1)
    await limiter.acquire()

    first = asyncio.ensure_future(limiter.acquire())
    second = asyncio.ensure_future(limiter.acquire())
    await settle()

    # Hand the slot to `first`, then cancel it before it resumes.
    limiter.release()
    first.cancel()
    await settle()

    assert first.cancelled()
    await asyncio.wait_for(second, timeout=1)
    assert limiter.active == 1


@pytest.mark.asyncio
async def test_slot_context_manager():
    limiter = ConcurrencyLimiter(2)
    async with limiter.slot():
        assert limiter.active == 1
    assert limiter.active == 0
