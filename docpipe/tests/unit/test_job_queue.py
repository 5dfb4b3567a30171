from __future__ import annotations

import pytest

from docpipe.core.config import get_settings
from docpipe.core.errors import TerminalExecutionError, TransientExecutionError, ValidationError
from docpipe.domain.state import Priority
from docpipe.services.queue import (
    BackoffPolicy,
    InMemoryQueueBackend,
    JobQueue,
    JobStatus,
    compute_backoff_ms,
)


def test_backoff_is_exponential_and_capped() -> None:
    delays = [
        compute_backoff_ms(attempt, initial_delay_ms=1_000, multiplier=2.0, max_delay_ms=30_000)
        for attempt in range(1, 7)
    ]
    assert delays == [1_000, 2_000, 4_000, 8_000, 16_000, 30_000]


def test_backoff_policy_rejects_cap_below_initial() -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(initial_delay_ms=5_000, max_delay_ms=1_000)


@pytest.mark.asyncio
async def test_lower_priority_value_dequeues_first(queue: JobQueue, clock) -> None:
    ids = {}
    for name, priority in (
        ("low", Priority.LOW),
        ("critical", Priority.CRITICAL),
        ("normal", Priority.NORMAL),
        ("high", Priority.HIGH),
    ):
        ids[await queue.enqueue("jobs", {"name": name}, priority=priority)] = name
        clock.advance_ms(1)

    order = []
    for _ in range(4):
        job = await queue.claim("jobs", worker_concurrency=10)
        assert job is not None
        order.append(ids[job.id])
    assert order == ["critical", "high", "normal", "low"]


@pytest.mark.asyncio
async def test_equal_priority_is_fifo_within_one_millisecond(queue: JobQueue) -> None:
    # The clock never moves, so every job shares created_at_ms.
    ids = [await queue.enqueue("jobs", {"n": index}) for index in range(20)]

    claimed = [(await queue.claim("jobs", worker_concurrency=50)).id for _ in range(20)]
    assert claimed == ids


@pytest.mark.asyncio
async def test_retried_job_keeps_its_place_ahead_of_later_jobs(queue: JobQueue, clock) -> None:
    first = await queue.enqueue("jobs", {"n": 1})
    job = await queue.claim("jobs")
    await queue.fail(job, TransientExecutionError("flaky"))
    later = [await queue.enqueue("jobs", {"n": n}) for n in (2, 3)]

    clock.advance_ms(job.backoff.delay_ms(1))
    claimed = [(await queue.claim("jobs", worker_concurrency=10)).id for _ in range(3)]
    assert claimed == [first, *later]


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_priority(queue: JobQueue) -> None:
    with pytest.raises(ValidationError):
        await queue.enqueue("jobs", {}, priority=9)


@pytest.mark.asyncio
async def test_concurrency_caps_active_jobs(queue: JobQueue) -> None:
    for index in range(3):
        await queue.enqueue("jobs", {"n": index})

    first = await queue.claim("jobs", worker_concurrency=2)
    second = await queue.claim("jobs", worker_concurrency=2)
    assert first is not None and second is not None
    assert await queue.claim("jobs", worker_concurrency=2) is None

    await queue.complete(first, {"ok": True})
    assert await queue.claim("jobs", worker_concurrency=2) is not None


@pytest.mark.asyncio
async def test_rate_governor_limits_admissions_per_window(monkeypatch, clock) -> None:
    monkeypatch.setenv("ANALYSIS_QUEUE_RATE_MAX", "2")
    get_settings.cache_clear()
    queue = JobQueue(InMemoryQueueBackend(), settings=get_settings(), time_provider=clock)
    for index in range(3):
        await queue.enqueue("analysis", {"n": index})

    assert await queue.claim("analysis") is not None
    assert await queue.claim("analysis") is not None
    assert await queue.claim("analysis") is None

    clock.advance_ms(1_000)
    assert await queue.claim("analysis") is not None


@pytest.mark.asyncio
async def test_retryable_failure_backs_off_then_goes_terminal(queue: JobQueue, clock) -> None:
    job_id = await queue.enqueue("jobs", {"n": 1}, max_attempts=3)

    job = await queue.claim("jobs")
    assert job.attempts == 1
    delayed = await queue.fail(job, TransientExecutionError("upstream 503"))
    assert delayed.status == JobStatus.DELAYED

    # Not runnable until the 1s backoff has elapsed.
    clock.advance_ms(999)
    assert await queue.claim("jobs") is None
    clock.advance_ms(1)
    job = await queue.claim("jobs")
    assert job.attempts == 2
    await queue.fail(job, TransientExecutionError("upstream 503"))

    clock.advance_ms(1_999)
    assert await queue.claim("jobs") is None
    clock.advance_ms(1)
    job = await queue.claim("jobs")
    assert job.attempts == 3
    final = await queue.fail(job, TransientExecutionError("upstream 503"))

    assert final.status == JobStatus.FAILED
    stored = await queue.get_job("jobs", job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "upstream 503"
    metrics = await queue.metrics("jobs")
    assert metrics.failed == 1
    assert metrics.delayed == 0


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(queue: JobQueue) -> None:
    await queue.enqueue("jobs", {"n": 1}, max_attempts=5)
    job = await queue.claim("jobs")

    failed = await queue.fail(job, TerminalExecutionError("bad input"))

    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 1
    assert await queue.claim("jobs") is None


@pytest.mark.asyncio
async def test_progress_updates_are_bounded(queue: JobQueue) -> None:
    job_id = await queue.enqueue("jobs", {})
    await queue.update_progress("jobs", job_id, 40)
    assert await queue.get_progress("jobs", job_id) == 40

    with pytest.raises(ValidationError):
        await queue.update_progress("jobs", job_id, 101)


@pytest.mark.asyncio
async def test_stalled_jobs_return_to_waiting_after_lease(queue: JobQueue, clock) -> None:
    job_id = await queue.enqueue("jobs", {})
    claimed = await queue.claim("jobs")
    assert claimed.id == job_id

    assert (await queue.recover_stalled("jobs")).total == 0
    clock.advance_ms(get_settings().job_lease_ms)
    sweep = await queue.recover_stalled("jobs")
    assert sweep.requeued == [job_id]
    assert sweep.failed == []

    again = await queue.claim("jobs")
    assert again.id == job_id
    assert again.attempts == 2


@pytest.mark.asyncio
async def test_job_that_keeps_stalling_fails_after_max_attempts(queue: JobQueue, clock) -> None:
    job_id = await queue.enqueue("jobs", {}, max_attempts=2)
    handed_out: list[int] = []

    for _ in range(4):
        job = await queue.claim("jobs")
        if job is None:
            break
        handed_out.append(job.attempts)
        clock.advance_ms(get_settings().job_lease_ms)
        sweep = await queue.recover_stalled("jobs")

    assert handed_out == [1, 2]
    assert [job.id for job in sweep.failed] == [job_id]
    stored = await queue.get_job("jobs", job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "stalled"
    assert stored.finished_at_ms is not None
    metrics = await queue.metrics("jobs")
    assert (metrics.active, metrics.waiting, metrics.failed) == (0, 0, 1)


@pytest.mark.asyncio
async def test_finished_jobs_are_pruned_after_retention(queue: JobQueue, clock) -> None:
    await queue.enqueue("jobs", {})
    job = await queue.claim("jobs")
    await queue.complete(job, {"ok": True})
    assert (await queue.metrics("jobs")).completed == 1

    assert await queue.prune("jobs") == 0
    clock.advance_ms(get_settings().job_completed_retention_s * 1000)
    assert await queue.prune("jobs") == 1
    assert await queue.get_job("jobs", job.id) is None
