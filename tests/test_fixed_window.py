"""Unit tests for the fixed window strategy against both stores."""

import pytest

from admission.adapters.rate_limit.base import RateLimitConfig, RateLimitStrategy
from admission.core.errors import StoreUnavailableAppError
from admission.services.strategies import FixedWindowStrategy

STRATEGY = FixedWindowStrategy()


async def _decide(mode, shared_store, fallback_store, config, now, key="k"):
    if mode == "shared":
        return await STRATEGY.apply_shared(shared_store, key, config, now)
    return STRATEGY.apply_local(fallback_store, key, config, now)


@pytest.fixture
def config() -> RateLimitConfig:
    return RateLimitConfig(window_ms=1000, max_requests=3, strategy=RateLimitStrategy.FIXED_WINDOW)


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["shared", "local"])
async def test_scenario_three_per_second(mode, shared_store, fallback_store, config, clock) -> None:
    t0 = clock.now

    remaining = []
    for _ in range(3):
        result = await _decide(mode, shared_store, fallback_store, config, t0)
        assert result.allowed is True
        remaining.append(result.remaining)
    assert remaining == [2, 1, 0]

    denied = await _decide(mode, shared_store, fallback_store, config, t0 + 500)
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.retry_after == 1
    assert denied.reset_time == t0 + 1000

    clock.advance(1001)
    next_window = await _decide(mode, shared_store, fallback_store, config, t0 + 1001)
    assert next_window.allowed is True
    assert next_window.remaining == 2
    assert next_window.reset_time == t0 + 2000


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["shared", "local"])
async def test_exactly_max_requests_per_window(mode, shared_store, fallback_store, clock) -> None:
    config = RateLimitConfig(window_ms=60_000, max_requests=10)
    t0 = clock.now

    allowed = [
        (await _decide(mode, shared_store, fallback_store, config, t0 + i)).allowed
        for i in range(11)
    ]

    assert allowed == [True] * 10 + [False]


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["shared", "local"])
async def test_boundary_burst_admits_twice_the_limit(mode, shared_store, fallback_store, config, clock) -> None:
    boundary = clock.now + 1000

    before = [(await _decide(mode, shared_store, fallback_store, config, boundary - 1)).allowed for _ in range(3)]
    clock.advance(1000)
    after = [(await _decide(mode, shared_store, fallback_store, config, boundary)).allowed for _ in range(3)]

    assert before == [True, True, True]
    assert after == [True, True, True]


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["shared", "local"])
async def test_reset_time_never_decreases(mode, shared_store, fallback_store, config, clock) -> None:
    t0 = clock.now
    resets = []
    for offset in range(0, 5000, 250):
        clock.now = t0 + offset
        result = await _decide(mode, shared_store, fallback_store, config, clock.now)
        assert result.reset_time >= clock.now
        resets.append(result.reset_time)

    assert resets == sorted(resets)


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["shared", "local"])
async def test_keys_have_independent_budgets(mode, shared_store, fallback_store, clock) -> None:
    config = RateLimitConfig(window_ms=1000, max_requests=1)

    assert (await _decide(mode, shared_store, fallback_store, config, clock.now, key="a")).allowed is True
    assert (await _decide(mode, shared_store, fallback_store, config, clock.now, key="a")).allowed is False
    assert (await _decide(mode, shared_store, fallback_store, config, clock.now, key="b")).allowed is True


@pytest.mark.asyncio
async def test_shared_counter_key_includes_window_start(shared_store, config, clock) -> None:
    await STRATEGY.apply_shared(shared_store, "client", config, clock.now)

    assert f"client:{clock.now}" in shared_store.data
    value, expires_at = shared_store.data[f"client:{clock.now}"]
    assert value == 1
    assert expires_at == clock.now + 1000


def test_retry_after_rounds_up_to_whole_seconds() -> None:
    config = RateLimitConfig(window_ms=60_000, max_requests=1)

    result = FixedWindowStrategy.evaluate(config, window_start=0, count_before=1, now_ms=58_001)

    assert result.allowed is False
    assert result.retry_after == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("corrupt", ["garbage", ["not", "a", "count"], {"count": 1}])
async def test_corrupt_shared_counter_is_a_store_failure(shared_store, config, clock, corrupt) -> None:
    shared_store.data[f"client:{clock.now}"] = (corrupt, clock.now + 60_000)

    with pytest.raises(StoreUnavailableAppError) as exc_info:
        await STRATEGY.apply_shared(shared_store, "client", config, clock.now)

    assert exc_info.value.code == "shared_store_corrupt_value"
    assert exc_info.value.details["operation"] == "increment"
