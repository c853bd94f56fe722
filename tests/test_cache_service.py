from __future__ import annotations

import asyncio

import pytest

from scopedrop.services.cache_service import ComputeError, SingleFlightCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingCompute:
    """Compute that blocks until released, counting invocations."""

    def __init__(self, value: object = "derived", error: Exception | None = None) -> None:
        self.value = value
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self) -> object:
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.value


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_computation() -> None:
    cache = SingleFlightCache()
    compute = CountingCompute(value={"topic": "fintech"})

    waiters = [asyncio.ensure_future(cache.get_or_compute("resource:fintech", compute)) for _ in range(10)]
    await asyncio.sleep(0)
    assert cache.is_in_flight("resource:fintech")

    compute.release.set()
    results = await asyncio.gather(*waiters)

    assert compute.calls == 1
    assert all(r is results[0] for r in results)
    stats = cache.stats()
    assert stats.misses == 1
    assert stats.shared_waits == 9
    assert stats.in_flight == 0


@pytest.mark.asyncio
async def test_live_entry_is_returned_without_computing() -> None:
    cache = SingleFlightCache()

    async def compute() -> str:
        return "v1"

    assert await cache.get_or_compute("k", compute) == "v1"

    async def never() -> str:
        raise AssertionError("should not be called")

    assert await cache.get_or_compute("k", never) == "v1"
    assert cache.stats().hits == 1


@pytest.mark.asyncio
async def test_ttl_expiry_recomputes() -> None:
    clock = FakeClock()
    cache = SingleFlightCache(clock=clock)
    calls = []

    async def compute() -> int:
        calls.append(1)
        return len(calls)

    assert await cache.get_or_compute("k", compute, ttl=60) == 1
    clock.now += 59
    assert await cache.get_or_compute("k", compute, ttl=60) == 1
    clock.now += 1
    assert await cache.get_or_compute("k", compute, ttl=60) == 2


@pytest.mark.asyncio
async def test_no_ttl_never_expires_and_default_ttl_applies() -> None:
    clock = FakeClock()
    forever = SingleFlightCache(clock=clock)
    bounded = SingleFlightCache(default_ttl=10, clock=clock)

    async def compute() -> str:
        return "x"

    await forever.get_or_compute("k", compute)
    await bounded.get_or_compute("k", compute)
    clock.now += 10_000
    assert forever.has("k")
    assert not bounded.has("k")


@pytest.mark.asyncio
async def test_failure_reaches_all_waiters_and_is_not_cached() -> None:
    cache = SingleFlightCache()
    compute = CountingCompute(error=RuntimeError("upstream 500"))

    waiters = [asyncio.ensure_future(cache.get_or_compute("k", compute)) for _ in range(3)]
    await asyncio.sleep(0)
    compute.release.set()
    outcomes = await asyncio.gather(*waiters, return_exceptions=True)

    assert compute.calls == 1
    assert all(isinstance(o, ComputeError) for o in outcomes)
    assert all(o is outcomes[0] for o in outcomes)
    assert isinstance(outcomes[0].cause, RuntimeError)
    assert outcomes[0].key == "k"

    assert not cache.has("k")
    assert not cache.is_in_flight("k")
    assert len(cache) == 0

    async def recovered() -> str:
        return "ok"

    assert await cache.get_or_compute("k", recovered) == "ok"


@pytest.mark.asyncio
async def test_invalidate_during_flight_still_delivers_but_does_not_store() -> None:
    cache = SingleFlightCache()
    compute = CountingCompute(value="stale")

    waiter = asyncio.ensure_future(cache.get_or_compute("k", compute))
    await asyncio.sleep(0)
    assert cache.invalidate("k")
    assert not cache.is_in_flight("k")

    compute.release.set()
    assert await waiter == "stale"
    assert not cache.has("k")

    async def fresh() -> str:
        return "fresh"

    assert await cache.get_or_compute("k", fresh) == "fresh"


@pytest.mark.asyncio
async def test_lookup_after_invalidate_starts_new_computation() -> None:
    cache = SingleFlightCache()
    old = CountingCompute(value="old")
    new = CountingCompute(value="new")

    first = asyncio.ensure_future(cache.get_or_compute("k", old))
    await asyncio.sleep(0)
    cache.invalidate("k")
    second = asyncio.ensure_future(cache.get_or_compute("k", new))
    await asyncio.sleep(0)

    new.release.set()
    assert await second == "new"
    old.release.set()
    assert await first == "old"
    # the superseded computation must not overwrite the newer entry
    assert cache.get("k") == "new"


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_computation() -> None:
    cache = SingleFlightCache()
    compute = CountingCompute(value=42)

    impatient = asyncio.ensure_future(cache.get_or_compute("k", compute))
    patient = asyncio.ensure_future(cache.get_or_compute("k", compute))
    await asyncio.sleep(0)
    impatient.cancel()
    await asyncio.sleep(0)

    compute.release.set()
    assert await patient == 42
    assert impatient.cancelled()
    assert cache.get("k") == 42


@pytest.mark.asyncio
async def test_clear_with_prefix() -> None:
    cache = SingleFlightCache()

    async def compute() -> str:
        return "v"

    for key in ("resource:ai", "resource:fintech", "feed:funding:3"):
        await cache.get_or_compute(key, compute)

    assert cache.clear(prefix="resource:") == 2
    assert cache.has("feed:funding:3")
    assert not cache.has("resource:ai")
    assert cache.clear() == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_purge_expired() -> None:
    clock = FakeClock()
    cache = SingleFlightCache(clock=clock)

    async def compute() -> str:
        return "v"

    await cache.get_or_compute("short", compute, ttl=1)
    await cache.get_or_compute("long", compute, ttl=100)
    clock.now += 5
    assert cache.purge_expired() == 1
    assert cache.stats().size == 1
