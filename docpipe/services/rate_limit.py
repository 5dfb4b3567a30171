from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
import logging
import time
from typing import Awaitable, Callable, Protocol
from uuid import uuid4

from redis.asyncio import Redis

from docpipe.core.config import get_settings
from docpipe.core.errors import AdmissionUnavailable
from docpipe.domain.state import Tier, normalize_tier
from docpipe.services.store import store_errors


logger = logging.getLogger(__name__)

DIMENSION_USER = "user"
DIMENSION_IP = "ip"
MOST_RESTRICTIVE_NONE = "none"

ENDPOINT_DEFAULT = "default"
ENDPOINT_AUTH = "auth"
ENDPOINT_WEBHOOKS = "webhooks"


@dataclass(frozen=True)
class WindowLimit:
    window_ms: int
    max_requests: int


@dataclass(frozen=True)
class TierLimits:
    # Anonymous tiers have no user dimension.
    user: WindowLimit | None
    ip: WindowLimit


@dataclass(frozen=True)
class RateLimitKey:
    subject: str
    dimension: str
    endpoint: str

    def storage_key(self, prefix: str) -> str:
        return f"{prefix}:{self.dimension}:{self.subject}:{self.endpoint}"


@dataclass(frozen=True)
class WindowSnapshot:
    # Entries counted in the trailing window after appending the current request.
    count: int
    oldest_ms: int
    # Timestamp whose expiry brings the window back under the ceiling.
    release_ms: int


@dataclass(frozen=True)
class Decision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_ms: int | None = None

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000.0, tz=timezone.utc)


@dataclass(frozen=True)
class DualDecision:
    allowed: bool
    most_restrictive: str
    ip: Decision
    user: Decision | None = None
    denied: tuple[str, ...] = field(default_factory=tuple)
    degraded: bool = False

    @property
    def surfaced(self) -> Decision:
        # Headers report the dimension that bit, or the one closest to its ceiling.
        if self.most_restrictive == DIMENSION_USER and self.user is not None:
            return self.user
        if self.most_restrictive == DIMENSION_IP or self.user is None:
            return self.ip
        return self.user if self.user.remaining < self.ip.remaining else self.ip

    @property
    def retry_after_ms(self) -> int:
        return int(self.surfaced.retry_after_ms or 0)


class WindowStore(Protocol):
    async def hit(
        self, key: str, *, now_ms: int, window_ms: int, max_requests: int, member: str
    ) -> WindowSnapshot:
        ...


_SLIDING_WINDOW_LUA = r"""
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])

redis.call("ZREMRANGEBYSCORE", key, "-inf", string.format("%.0f", now_ms - window_ms))
redis.call("ZADD", key, ARGV[1], ARGV[4])
redis.call("PEXPIRE", key, window_ms)

local count = redis.call("ZCARD", key)
local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
local release_index = 0
if count > max_requests then
  release_index = count - max_requests
end
local release = redis.call("ZRANGE", key, release_index, release_index, "WITHSCORES")

return {count, oldest[2], release[2]}
"""


class RedisWindowStore:
    """Sorted-set sliding windows; trim, append and count run as one Lua script."""

    def __init__(self, redis_factory: Callable[[], Awaitable[Redis]]) -> None:
        self._redis_factory = redis_factory

    async def hit(
        self, key: str, *, now_ms: int, window_ms: int, max_requests: int, member: str
    ) -> WindowSnapshot:
        redis = await self._redis_factory()
        with store_errors("rate_limit.hit"):
            result = await redis.eval(
                _SLIDING_WINDOW_LUA,
                1,
                key,
                now_ms,
                window_ms,
                max_requests,
                member,
            )
        return WindowSnapshot(
            count=int(result[0]),
            oldest_ms=int(float(result[1])),
            release_ms=int(float(result[2])),
        )


class InMemoryWindowStore:
    """Process-local windows for single-process development and tests."""

    def __init__(self) -> None:
        self._windows: dict[str, list[int]] = {}
        self._lock = asyncio.Lock()

    async def hit(
        self, key: str, *, now_ms: int, window_ms: int, max_requests: int, member: str
    ) -> WindowSnapshot:
        async with self._lock:
            cutoff = now_ms - window_ms
            entries = [ts for ts in self._windows.get(key, []) if ts > cutoff]
            entries.append(now_ms)
            entries.sort()
            self._windows[key] = entries
            count = len(entries)
            release_index = count - max_requests if count > max_requests else 0
            return WindowSnapshot(count=count, oldest_ms=entries[0], release_ms=entries[release_index])


@lru_cache(maxsize=64)
def limits_for(tier: str, endpoint: str = ENDPOINT_DEFAULT) -> TierLimits:
    # Cached per (tier, endpoint); settings changes need reset_rate_limiter_state().
    settings = get_settings()
    window = settings.rl_window_ms
    resolved = normalize_tier(tier)
    if resolved == Tier.ANONYMOUS:
        user_max = None
        ip_max = settings.rl_anonymous_ip_max
    else:
        user_max = int(getattr(settings, f"rl_{resolved.value}_user_max"))
        ip_max = int(getattr(settings, f"rl_{resolved.value}_ip_max"))

    if endpoint in (ENDPOINT_AUTH, ENDPOINT_WEBHOOKS):
        # Sensitive endpoints cap every tier at their own tighter ceilings.
        if user_max is None:
            ip_max = min(ip_max, int(getattr(settings, f"rl_{endpoint}_anonymous_ip_max")))
        else:
            user_max = min(user_max, int(getattr(settings, f"rl_{endpoint}_user_max")))
            ip_max = min(ip_max, int(getattr(settings, f"rl_{endpoint}_ip_max")))

    return TierLimits(
        user=WindowLimit(window, user_max) if user_max is not None else None,
        ip=WindowLimit(window, ip_max),
    )


class SlidingWindowRateLimiter:
    def __init__(
        self,
        store: WindowStore,
        *,
        prefix: str | None = None,
        fail_mode: str | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._prefix = prefix or settings.rl_redis_prefix
        self._fail_mode = (fail_mode or settings.rl_fail_mode).strip().lower()
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def check(self, key: RateLimitKey, limit: WindowLimit) -> Decision:
        # Every call is recorded, denials included, so rejected retries keep counting.
        now_ms = round(self._time_provider() * 1000)
        snapshot = await self._store.hit(
            key.storage_key(self._prefix),
            now_ms=now_ms,
            window_ms=limit.window_ms,
            max_requests=limit.max_requests,
            member=f"{now_ms}-{uuid4().hex[:12]}",
        )
        allowed = snapshot.count <= limit.max_requests
        reset_at_ms = snapshot.release_ms + limit.window_ms
        return Decision(
            allowed=allowed,
            limit=limit.max_requests,
            remaining=max(0, limit.max_requests - snapshot.count),
            reset_at_ms=reset_at_ms,
            retry_after_ms=None if allowed else max(1, reset_at_ms - now_ms),
        )

    async def check_request(
        self,
        *,
        user_id: str | None,
        client_ip: str,
        tier: str | None,
        endpoint: str = ENDPOINT_DEFAULT,
    ) -> DualDecision:
        resolved_tier = normalize_tier(tier) if user_id else Tier.ANONYMOUS
        limits = limits_for(resolved_tier.value, endpoint)
        try:
            ip_decision = await self.check(RateLimitKey(client_ip, DIMENSION_IP, endpoint), limits.ip)
            user_decision: Decision | None = None
            if user_id and limits.user is not None:
                user_decision = await self.check(
                    RateLimitKey(user_id, DIMENSION_USER, endpoint), limits.user
                )
        except Exception as exc:  # noqa: BLE001 - counter store outages follow the configured fail mode
            logger.warning(
                "rate_limit_degraded fail_mode=%s endpoint=%s user_id=%s client_ip=%s error=%s",
                self._fail_mode,
                endpoint,
                user_id,
                client_ip,
                type(exc).__name__,
            )
            if self._fail_mode == "closed":
                raise AdmissionUnavailable("rate limit store unavailable") from exc
            return _degraded_decision(limits, round(self._time_provider() * 1000))
        return combine_decisions(user_decision, ip_decision)


def combine_decisions(user: Decision | None, ip: Decision) -> DualDecision:
    denied: list[str] = []
    if user is not None and not user.allowed:
        denied.append(DIMENSION_USER)
    if not ip.allowed:
        denied.append(DIMENSION_IP)
    if not denied:
        return DualDecision(allowed=True, most_restrictive=MOST_RESTRICTIVE_NONE, ip=ip, user=user)
    most_restrictive = denied[0]
    if len(denied) == 2 and user is not None:
        # Both exceeded: report the dimension that keeps the caller out longest.
        if int(ip.retry_after_ms or 0) > int(user.retry_after_ms or 0):
            most_restrictive = DIMENSION_IP
    return DualDecision(
        allowed=False,
        most_restrictive=most_restrictive,
        ip=ip,
        user=user,
        denied=tuple(denied),
    )


def _degraded_decision(limits: TierLimits, now_ms: int) -> DualDecision:
    ip = Decision(
        allowed=True,
        limit=limits.ip.max_requests,
        remaining=limits.ip.max_requests,
        reset_at_ms=now_ms + limits.ip.window_ms,
    )
    user = None
    if limits.user is not None:
        user = Decision(
            allowed=True,
            limit=limits.user.max_requests,
            remaining=limits.user.max_requests,
            reset_at_ms=now_ms + limits.user.window_ms,
        )
    return DualDecision(
        allowed=True,
        most_restrictive=MOST_RESTRICTIVE_NONE,
        ip=ip,
        user=user,
        degraded=True,
    )


def reset_rate_limiter_state() -> None:
    # Drop cached tier limits so settings overrides apply in tests.
    limits_for.cache_clear()
