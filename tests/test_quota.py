"""Quota manager admission, driven by a fake clock and sleep."""

import asyncio

import pytest

from washbook.common.quota import QuotaManager


class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        # Let admitted calls start before time moves on.
        await asyncio.sleep(0)
        self.sleeps.append(seconds)
        self.now += seconds


def test_never_exceeds_cap_in_any_rolling_window():
    fake = FakeTime()
    quota = QuotaManager("gateway", max_requests_per_window=95, window_seconds=1.0, clock=fake.clock, sleep=fake.sleep)
    started: list[float] = []

    async def call(i: int) -> int:
        started.append(fake.now)
        return i

    async def scenario():
        return await asyncio.gather(*(quota.execute_with_quota(lambda i=i: call(i)) for i in range(200)))

    results = asyncio.run(scenario())

    assert results == list(range(200))
    assert len(started) == 200
    for t in started:
        assert sum(1 for other in started if t <= other < t + 1.0) <= 95
    assert fake.now == pytest.approx(2.0)


def test_admission_is_fifo():
    fake = FakeTime()
    quota = QuotaManager("gateway", max_requests_per_window=2, clock=fake.clock, sleep=fake.sleep)
    order: list[int] = []

    async def call(i: int) -> None:
        order.append(i)

    async def scenario():
        await asyncio.gather(*(quota.execute_with_quota(lambda i=i: call(i)) for i in range(5)))

    asyncio.run(scenario())
    assert order == [0, 1, 2, 3, 4]
    assert fake.sleeps == [pytest.approx(1.0), pytest.approx(1.0)]


def test_errors_reach_the_caller():
    quota = QuotaManager("gateway", max_requests_per_window=5)

    async def broken():
        raise TimeoutError("slow gateway")

    async def scenario():
        with pytest.raises(TimeoutError):
            await quota.execute_with_quota(broken)

    asyncio.run(scenario())


def test_stats_and_availability():
    fake = FakeTime()
    quota = QuotaManager("gateway", max_requests_per_window=1, clock=fake.clock, sleep=fake.sleep)

    async def ok():
        return "ok"

    async def scenario():
        assert quota.has_quota_available()
        await quota.execute_with_quota(ok)

    asyncio.run(scenario())
    assert not quota.has_quota_available()
    stats = quota.stats()
    assert stats["admitted_in_window"] == 1
    assert stats["remaining_quota"] == 0
    assert stats["queue_length"] == 0
    fake.now = 1.0
    assert quota.has_quota_available()
