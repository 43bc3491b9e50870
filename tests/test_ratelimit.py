import asyncio

import pytest

from core.ratelimit import SWEEP_THRESHOLD, FailureThrottle
from core.totp import CodeCheck

KEY = ("umid-1", "doc-1")


class ManualClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_count_is_capped_at_max_failures():
    throttle = FailureThrottle(max_failures=5, window_seconds=300)

    counts = [await throttle.record_failure(KEY) for _ in range(7)]

    assert counts == [1, 2, 3, 4, 5, 5, 5]
    assert await throttle.is_throttled(KEY)


@pytest.mark.asyncio
async def test_throttled_attempt_skips_verification():
    throttle = FailureThrottle(max_failures=2, window_seconds=300)
    calls = []

    def verify():
        calls.append(1)
        return CodeCheck.invalid

    assert await throttle.attempt(KEY, verify) is CodeCheck.invalid
    assert await throttle.attempt(KEY, verify) is CodeCheck.invalid
    assert await throttle.attempt(KEY, verify) is None
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_valid_attempt_clears_the_key():
    throttle = FailureThrottle(max_failures=3, window_seconds=300)
    await throttle.record_failure(KEY)

    assert await throttle.attempt(KEY, lambda: CodeCheck.valid) is CodeCheck.valid
    assert len(throttle) == 0


@pytest.mark.asyncio
async def test_concurrent_failures_never_overshoot():
    throttle = FailureThrottle(max_failures=5, window_seconds=300)

    def verify():
        return CodeCheck.invalid

    results = await asyncio.gather(*(throttle.attempt(KEY, verify) for _ in range(50)))

    assert sum(1 for r in results if r is CodeCheck.invalid) == 5
    assert sum(1 for r in results if r is None) == 45
    assert throttle._failures[KEY][0] == 5


@pytest.mark.asyncio
async def test_expired_window_is_forgotten():
    clock = ManualClock()
    throttle = FailureThrottle(max_failures=2, window_seconds=60, clock=clock)
    await throttle.record_failure(KEY)
    await throttle.record_failure(KEY)
    assert await throttle.is_throttled(KEY)

    clock.now += 61

    assert not await throttle.is_throttled(KEY)
    assert len(throttle) == 0


@pytest.mark.asyncio
async def test_stale_keys_are_swept_once_the_table_is_large():
    clock = ManualClock()
    throttle = FailureThrottle(max_failures=5, window_seconds=60, clock=clock)
    for n in range(SWEEP_THRESHOLD):
        await throttle.record_failure((f"umid-{n}", "doc-1"))
    assert len(throttle) == SWEEP_THRESHOLD

    clock.now += 61
    await throttle.record_failure(KEY)

    assert len(throttle) == 1
