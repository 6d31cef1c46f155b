import asyncio
import time

import pytest

from stealthpay.infrastructure.gateways.rate_limiter import RpcRateGate


@pytest.mark.asyncio
async def test_calls_are_spaced_by_min_interval():
    gate = RpcRateGate(min_interval_ms=100)

    async with gate:
        pass
    started = time.monotonic()
    async with gate:
        pass

    assert time.monotonic() - started >= 0.09


@pytest.mark.asyncio
async def test_one_call_in_flight():
    gate = RpcRateGate(min_interval_ms=0)
    in_flight = 0
    peak = 0

    async def call():
        nonlocal in_flight, peak
        async with gate:
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

    await asyncio.gather(*(call() for _ in range(5)))

    assert peak == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_releases_the_gate():
    gate = RpcRateGate(min_interval_ms=5000)
    async with gate:
        pass

    waiter = asyncio.create_task(gate.__aenter__())
    await asyncio.sleep(0.01)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert not gate._lock.locked()
