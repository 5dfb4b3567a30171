from __future__ import annotations

from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
import pytest

from docpipe.core.config import get_settings
from docpipe.core.errors import (
    AdmissionUnavailable,
    StoreUnavailableError,
    TransientExecutionError,
)
from docpipe.domain.state import Priority
from docpipe.services.queue import JobQueue, JobStatus, RedisQueueBackend
from docpipe.services.rate_limit import (
    DIMENSION_IP,
    DIMENSION_USER,
    RateLimitKey,
    RedisWindowStore,
    SlidingWindowRateLimiter,
    WindowLimit,
    reset_rate_limiter_state,
)


@pytest.fixture
async def redis():
    client = FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


def _factory(client):
    async def factory():
        return client

    return factory


def _queue(client, clock) -> JobQueue:
    backend = RedisQueueBackend(_factory(client), prefix="docpipe:test")
    return JobQueue(backend, settings=get_settings(), time_provider=clock)


def _limiter(client, clock, **kwargs) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(RedisWindowStore(_factory(client)), time_provider=clock, **kwargs)


@pytest.mark.asyncio
async def test_redis_claim_orders_by_priority_then_enqueue_order(redis, clock) -> None:
    queue = _queue(redis, clock)
    normal = [await queue.enqueue("jobs", {"n": n}) for n in range(10)]
    critical = await queue.enqueue("jobs", {"n": "c"}, priority=Priority.CRITICAL)
    low = await queue.enqueue("jobs", {"n": "l"}, priority=Priority.LOW)
    high = [await queue.enqueue("jobs", {"n": n}, priority=Priority.HIGH) for n in range(5)]

    claimed = [(await queue.claim("jobs", worker_concurrency=50)).id for _ in range(17)]

    assert claimed == [critical, *high, *normal, low]
    assert await queue.claim("jobs", worker_concurrency=50) is None


@pytest.mark.asyncio
async def test_redis_delayed_retry_is_promoted_in_place(redis, clock) -> None:
    queue = _queue(redis, clock)
    first = await queue.enqueue("jobs", {"n": 1})
    job = await queue.claim("jobs")
    assert job.attempts == 1
    delayed = await queue.fail(job, TransientExecutionError("flaky"))
    assert delayed.status == JobStatus.DELAYED
    later = await queue.enqueue("jobs", {"n": 2})

    # The later job runs while the retry waits out its backoff.
    assert (await queue.claim("jobs", worker_concurrency=10)).id == later
    assert await queue.claim("jobs", worker_concurrency=10) is None

    clock.advance_ms(job.backoff.delay_ms(1))
    retried = await queue.claim("jobs", worker_concurrency=10)
    assert retried.id == first
    assert retried.attempts == 2
    assert retried.status == JobStatus.ACTIVE


@pytest.mark.asyncio
async def test_redis_concurrency_cap_is_enforced(redis, clock) -> None:
    queue = _queue(redis, clock)
    for index in range(3):
        await queue.enqueue("jobs", {"n": index})

    first = await queue.claim("jobs", worker_concurrency=2)
    second = await queue.claim("jobs", worker_concurrency=2)
    assert first is not None and second is not None
    assert await queue.claim("jobs", worker_concurrency=2) is None

    await queue.complete(first, {"ok": True})
    assert await queue.claim("jobs", worker_concurrency=2) is not None
    metrics = await queue.metrics("jobs")
    assert (metrics.active, metrics.completed, metrics.waiting) == (2, 1, 0)


@pytest.mark.asyncio
async def test_redis_rate_governor_limits_admissions(redis, monkeypatch, clock) -> None:
    monkeypatch.setenv("ANALYSIS_QUEUE_RATE_MAX", "2")
    get_settings.cache_clear()
    queue = _queue(redis, clock)
    for index in range(3):
        await queue.enqueue("analysis", {"n": index})

    assert await queue.claim("analysis") is not None
    assert await queue.claim("analysis") is not None
    assert await queue.claim("analysis") is None

    clock.advance_ms(1_000)
    assert await queue.claim("analysis") is not None


@pytest.mark.asyncio
async def test_redis_stalled_recovery_respects_max_attempts(redis, clock) -> None:
    queue = _queue(redis, clock)
    job_id = await queue.enqueue("jobs", {}, max_attempts=2)
    lease_ms = get_settings().job_lease_ms

    await queue.claim("jobs")
    clock.advance_ms(lease_ms)
    sweep = await queue.recover_stalled("jobs")
    assert sweep.requeued == [job_id]

    again = await queue.claim("jobs")
    assert again.attempts == 2
    clock.advance_ms(lease_ms)
    sweep = await queue.recover_stalled("jobs")

    assert sweep.requeued == []
    assert [job.id for job in sweep.failed] == [job_id]
    assert await queue.claim("jobs") is None
    stored = await queue.get_job("jobs", job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "stalled"
    metrics = await queue.metrics("jobs")
    assert (metrics.active, metrics.waiting, metrics.failed) == (0, 0, 1)


@pytest.mark.asyncio
async def test_redis_progress_and_prune(redis, clock) -> None:
    queue = _queue(redis, clock)
    job_id = await queue.enqueue("jobs", {"n": 1})
    job = await queue.claim("jobs")
    await queue.update_progress("jobs", job_id, 60)
    assert await queue.get_progress("jobs", job_id) == 60

    await queue.complete(job, {"pages": 2})
    stored = await queue.get_job("jobs", job_id)
    assert stored.result == {"pages": 2}
    assert stored.progress == 100

    clock.advance_ms(get_settings().job_completed_retention_s * 1000)
    assert await queue.prune("jobs") == 1
    assert await queue.get_job("jobs", job_id) is None


@pytest.mark.asyncio
async def test_redis_window_allows_up_to_ceiling_then_denies(redis, clock) -> None:
    limiter = _limiter(redis, clock)
    key = RateLimitKey("u1", DIMENSION_USER, "default")
    limit = WindowLimit(window_ms=60_000, max_requests=3)

    remaining = []
    for _ in range(3):
        decision = await limiter.check(key, limit)
        assert decision.allowed
        remaining.append(decision.remaining)
        clock.advance_ms(100)
    assert remaining == [2, 1, 0]

    denied = await limiter.check(key, limit)
    assert not denied.allowed
    assert denied.retry_after_ms == 59_800

    clock.advance_ms(60_000)
    assert (await limiter.check(key, limit)).allowed


@pytest.mark.asyncio
async def test_redis_window_counts_denied_requests(redis, clock) -> None:
    limiter = _limiter(redis, clock)
    key = RateLimitKey("10.0.0.1", DIMENSION_IP, "default")
    limit = WindowLimit(window_ms=60_000, max_requests=2)

    assert (await limiter.check(key, limit)).allowed
    clock.advance_ms(1)
    assert (await limiter.check(key, limit)).allowed
    clock.advance_ms(30_000)
    assert not (await limiter.check(key, limit)).allowed
    clock.advance_ms(1)
    assert not (await limiter.check(key, limit)).allowed

    # The admitted entries aged out, the rejected ones have not.
    clock.advance_ms(30_000)
    assert not (await limiter.check(key, limit)).allowed


@pytest.mark.asyncio
async def test_redis_dual_check_reports_user_dimension(redis, monkeypatch, clock) -> None:
    monkeypatch.setenv("RL_FREE_USER_MAX", "2")
    monkeypatch.setenv("RL_FREE_IP_MAX", "5")
    get_settings.cache_clear()
    reset_rate_limiter_state()
    limiter = _limiter(redis, clock)

    for _ in range(2):
        assert (await limiter.check_request(user_id="u1", client_ip="10.0.0.1", tier="free")).allowed
    denied = await limiter.check_request(user_id="u1", client_ip="10.0.0.1", tier="free")

    assert not denied.allowed
    assert denied.most_restrictive == DIMENSION_USER
    assert denied.ip.allowed
    assert denied.retry_after_ms >= 1


@pytest.mark.asyncio
async def test_unreachable_redis_surfaces_store_errors(clock) -> None:
    server = FakeServer()
    server.connected = False
    client = FakeRedis(server=server, decode_responses=True)

    with pytest.raises(StoreUnavailableError):
        await RedisWindowStore(_factory(client)).hit(
            "k", now_ms=1, window_ms=1_000, max_requests=1, member="m"
        )
    with pytest.raises(StoreUnavailableError):
        await _queue(client, clock).enqueue("jobs", {})
    with pytest.raises(AdmissionUnavailable):
        await _limiter(client, clock, fail_mode="closed").check_request(
            user_id="u1", client_ip="10.0.0.1", tier="pro"
        )
