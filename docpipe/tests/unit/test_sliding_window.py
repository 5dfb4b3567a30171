from __future__ import annotations

import pytest

from docpipe.core.config import get_settings
from docpipe.core.errors import AdmissionUnavailable
from docpipe.services.rate_limit import (
    DIMENSION_IP,
    DIMENSION_USER,
    ENDPOINT_WEBHOOKS,
    MOST_RESTRICTIVE_NONE,
    InMemoryWindowStore,
    RateLimitKey,
    SlidingWindowRateLimiter,
    WindowLimit,
    WindowSnapshot,
    limits_for,
    reset_rate_limiter_state,
)


class _BrokenStore:
    async def hit(self, key, *, now_ms, window_ms, max_requests, member) -> WindowSnapshot:
        raise ConnectionError("redis down")


def _limiter(clock, **kwargs) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(InMemoryWindowStore(), time_provider=clock, **kwargs)


def _override_limits(monkeypatch, **values: int) -> None:
    for key, value in values.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    reset_rate_limiter_state()


@pytest.mark.asyncio
async def test_window_allows_up_to_ceiling_then_denies(clock) -> None:
    limiter = _limiter(clock)
    key = RateLimitKey("u1", DIMENSION_USER, "default")
    limit = WindowLimit(window_ms=1_000, max_requests=3)

    remaining = []
    for _ in range(3):
        decision = await limiter.check(key, limit)
        assert decision.allowed
        remaining.append(decision.remaining)
        clock.advance_ms(100)
    assert remaining == [2, 1, 0]

    denied = await limiter.check(key, limit)
    assert not denied.allowed
    assert denied.remaining == 0
    # Second entry (t=100) has to age out before a new request fits.
    assert denied.retry_after_ms == 800


@pytest.mark.asyncio
async def test_window_slides_instead_of_resetting_at_boundary(clock) -> None:
    limiter = _limiter(clock)
    key = RateLimitKey("u1", DIMENSION_USER, "default")
    limit = WindowLimit(window_ms=1_000, max_requests=3)

    clock.advance_ms(900)
    for _ in range(3):
        assert (await limiter.check(key, limit)).allowed
        clock.advance_ms(40)
    # A fixed window would have reset at t=1000; the trailing window still holds all three.
    clock.advance_ms(10)
    assert not (await limiter.check(key, limit)).allowed

    clock.advance_ms(1_000)
    assert (await limiter.check(key, limit)).allowed


@pytest.mark.asyncio
async def test_denied_requests_still_count(clock) -> None:
    limiter = _limiter(clock)
    key = RateLimitKey("10.0.0.1", DIMENSION_IP, "default")
    limit = WindowLimit(window_ms=1_000, max_requests=2)

    assert (await limiter.check(key, limit)).allowed
    clock.advance_ms(1)
    assert (await limiter.check(key, limit)).allowed
    clock.advance_ms(499)
    assert not (await limiter.check(key, limit)).allowed
    clock.advance_ms(499)
    assert not (await limiter.check(key, limit)).allowed

    # Both admitted entries have expired, but the rejected retries keep the window full.
    clock.advance_ms(2)
    assert not (await limiter.check(key, limit)).allowed


@pytest.mark.asyncio
async def test_user_dimension_is_most_restrictive(monkeypatch, clock) -> None:
    _override_limits(monkeypatch, RL_FREE_USER_MAX=2, RL_FREE_IP_MAX=5)
    limiter = _limiter(clock)

    for _ in range(2):
        decision = await limiter.check_request(user_id="u1", client_ip="1.1.1.1", tier="free")
        assert decision.allowed
        assert decision.most_restrictive == MOST_RESTRICTIVE_NONE

    decision = await limiter.check_request(user_id="u1", client_ip="1.1.1.1", tier="free")
    assert not decision.allowed
    assert decision.most_restrictive == DIMENSION_USER
    assert decision.denied == (DIMENSION_USER,)
    assert decision.ip.allowed
    assert decision.retry_after_ms > 0


@pytest.mark.asyncio
async def test_ip_dimension_blocks_many_users_behind_one_address(monkeypatch, clock) -> None:
    _override_limits(monkeypatch, RL_FREE_USER_MAX=10, RL_FREE_IP_MAX=3)
    limiter = _limiter(clock)

    for index in range(3):
        decision = await limiter.check_request(user_id=f"u{index}", client_ip="2.2.2.2", tier="free")
        assert decision.allowed

    decision = await limiter.check_request(user_id="u9", client_ip="2.2.2.2", tier="free")
    assert not decision.allowed
    assert decision.most_restrictive == DIMENSION_IP
    assert decision.user is not None and decision.user.allowed


@pytest.mark.asyncio
async def test_anonymous_requests_only_check_ip(monkeypatch, clock) -> None:
    _override_limits(monkeypatch, RL_ANONYMOUS_IP_MAX=1)
    limiter = _limiter(clock)

    first = await limiter.check_request(user_id=None, client_ip="3.3.3.3", tier=None)
    assert first.allowed
    assert first.user is None

    second = await limiter.check_request(user_id=None, client_ip="3.3.3.3", tier="premium")
    assert not second.allowed
    assert second.most_restrictive == DIMENSION_IP


@pytest.mark.asyncio
async def test_both_denied_surfaces_longest_wait(monkeypatch, clock) -> None:
    _override_limits(monkeypatch, RL_FREE_USER_MAX=2, RL_FREE_IP_MAX=2)
    limiter = _limiter(clock)

    await limiter.check_request(user_id="ua", client_ip="9.9.9.2", tier="free")
    clock.advance_ms(100)
    await limiter.check_request(user_id="ua", client_ip="9.9.9.1", tier="free")
    clock.advance_ms(100)
    await limiter.check_request(user_id="ub", client_ip="9.9.9.1", tier="free")
    clock.advance_ms(100)

    decision = await limiter.check_request(user_id="ua", client_ip="9.9.9.1", tier="free")
    assert not decision.allowed
    assert decision.denied == (DIMENSION_USER, DIMENSION_IP)
    assert decision.user is not None
    assert decision.user.retry_after_ms == 59_800
    assert decision.ip.retry_after_ms == 59_900
    assert decision.most_restrictive == DIMENSION_IP
    assert decision.retry_after_ms == 59_900


@pytest.mark.asyncio
async def test_store_outage_fails_open_by_default(clock) -> None:
    limiter = SlidingWindowRateLimiter(_BrokenStore(), time_provider=clock)

    decision = await limiter.check_request(user_id="u1", client_ip="4.4.4.4", tier="pro")

    assert decision.allowed
    assert decision.degraded


@pytest.mark.asyncio
async def test_store_outage_fails_closed_when_configured(clock) -> None:
    limiter = SlidingWindowRateLimiter(_BrokenStore(), fail_mode="closed", time_provider=clock)

    with pytest.raises(AdmissionUnavailable):
        await limiter.check_request(user_id="u1", client_ip="4.4.4.4", tier="pro")


def test_tier_limits_and_endpoint_overrides() -> None:
    pro = limits_for("pro")
    assert pro.user is not None and pro.user.max_requests == 50
    assert pro.ip.max_requests == 100
    assert pro.ip.window_ms == 60_000

    anonymous = limits_for("anonymous")
    assert anonymous.user is None
    assert anonymous.ip.max_requests == 10

    # Unknown tiers fall back to the free ceilings.
    assert limits_for("platinum").user.max_requests == 10

    webhooks = limits_for("premium", ENDPOINT_WEBHOOKS)
    assert webhooks.user.max_requests == 20
    assert webhooks.ip.max_requests == 40
