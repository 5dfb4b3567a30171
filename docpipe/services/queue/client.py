from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from docpipe.core.config import Settings, get_settings
from docpipe.core.errors import NotFoundError, ValidationError, is_retryable
from docpipe.domain.state import Priority
from docpipe.services.queue.backends import QueueBackend
from docpipe.services.queue.models import (
    BackoffPolicy,
    Job,
    JobStatus,
    QueueMetrics,
    StalledSweep,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueConfig:
    name: str
    # Max simultaneously active jobs across every worker on this queue.
    concurrency: int
    # Max jobs admitted to execution per rolling window; 0 disables the governor.
    rate_max: int
    rate_window_ms: int


def _failure_reason(error: BaseException | str) -> str:
    # Keep error messages concise for job records and delivery logs.
    if isinstance(error, str):
        return error[:500]
    message = str(error).strip()
    return (message or type(error).__name__)[:500]


class JobQueue:
    """Priority-ordered, retrying job queue over a pluggable atomic backend."""

    def __init__(
        self,
        backend: QueueBackend,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings or get_settings()
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    def now_ms(self) -> int:
        return round(self._time_provider() * 1000)

    def config_for(self, queue_name: str) -> QueueConfig:
        # Queue limits come from <name>_queue_concurrency / <name>_queue_rate_max settings.
        settings = self._settings
        for field_prefix in ("analysis", "enhancement", "export", "webhook"):
            if getattr(settings, f"{field_prefix}_queue_name") == queue_name:
                return QueueConfig(
                    name=queue_name,
                    concurrency=max(1, int(getattr(settings, f"{field_prefix}_queue_concurrency"))),
                    rate_max=max(0, int(getattr(settings, f"{field_prefix}_queue_rate_max"))),
                    rate_window_ms=max(1, int(settings.queue_rate_window_ms)),
                )
        return QueueConfig(
            name=queue_name,
            concurrency=1,
            rate_max=0,
            rate_window_ms=max(1, int(settings.queue_rate_window_ms)),
        )

    def default_backoff(self) -> BackoffPolicy:
        settings = self._settings
        return BackoffPolicy(
            initial_delay_ms=settings.job_backoff_initial_ms,
            multiplier=settings.job_backoff_multiplier,
            max_delay_ms=settings.job_backoff_max_ms,
        )

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        priority: int = int(Priority.NORMAL),
        max_attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
        delay_ms: int = 0,
        job_id: str | None = None,
    ) -> str:
        attempts = self._settings.job_max_attempts if max_attempts is None else int(max_attempts)
        if attempts < 1:
            raise ValidationError("max_attempts must be >= 1", field="max_attempts")
        if int(priority) not in {int(level) for level in Priority}:
            raise ValidationError("priority must be one of 1-4", field="priority")
        now_ms = self.now_ms()
        job = Job(
            id=job_id or uuid4().hex,
            queue_name=queue_name,
            payload=payload,
            priority=int(priority),
            max_attempts=attempts,
            backoff=backoff or self.default_backoff(),
            status=JobStatus.DELAYED if delay_ms > 0 else JobStatus.WAITING,
            created_at_ms=now_ms,
            next_run_at_ms=now_ms + max(0, int(delay_ms)),
        )
        await self._backend.add(job)
        logger.info(
            "job_enqueued queue=%s job_id=%s priority=%s max_attempts=%s",
            queue_name,
            job.id,
            job.priority,
            job.max_attempts,
        )
        return job.id

    async def claim(self, queue_name: str, worker_concurrency: int | None = None) -> Job | None:
        # Non-blocking; returns None when the queue is empty or a limit is saturated.
        config = self.config_for(queue_name)
        concurrency = config.concurrency if worker_concurrency is None else max(1, int(worker_concurrency))
        result = await self._backend.claim(
            queue_name,
            now_ms=self.now_ms(),
            concurrency=concurrency,
            rate_max=config.rate_max,
            rate_window_ms=config.rate_window_ms,
            lease_ms=self._settings.job_lease_ms,
        )
        if result.job is None and result.reason == "rate_limited":
            logger.debug("job_claim_throttled queue=%s retry_after_ms=%s", queue_name, result.retry_after_ms)
        return result.job

    async def claim_wait(
        self,
        queue_name: str,
        *,
        timeout_s: float,
        poll_interval_s: float,
        worker_concurrency: int | None = None,
    ) -> Job | None:
        # Poll with scheduled sleeps until a job arrives or the timeout lapses.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_s)
        while True:
            job = await self.claim(queue_name, worker_concurrency)
            if job is not None:
                return job
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll_interval_s, remaining))

    async def update_progress(self, queue_name: str, job_id: str, percent: int) -> None:
        if not 0 <= int(percent) <= 100:
            raise ValidationError("progress must be between 0 and 100", field="progress")
        if not await self._backend.set_progress(queue_name, job_id, int(percent)):
            raise NotFoundError(f"job {job_id} not found in queue {queue_name}")

    async def complete(self, job: Job, result: dict[str, Any] | None = None) -> Job:
        finished = job.model_copy(
            update={
                "status": JobStatus.COMPLETED,
                "progress": 100,
                "result": result,
                "error": None,
                "finished_at_ms": self.now_ms(),
            }
        )
        await self._backend.finish(finished, retention_s=self._settings.job_completed_retention_s)
        logger.info(
            "job_completed queue=%s job_id=%s attempts=%s",
            job.queue_name,
            job.id,
            job.attempts,
        )
        return finished

    async def fail(
        self,
        job: Job,
        error: BaseException | str,
        *,
        retryable: bool | None = None,
    ) -> Job:
        # Reschedule with backoff while attempts remain; otherwise the job is terminal but kept.
        reason = _failure_reason(error)
        if retryable is None:
            retryable = is_retryable(error) if isinstance(error, BaseException) else True
        now_ms = self.now_ms()
        if retryable and job.attempts < job.max_attempts:
            delay_ms = job.backoff.delay_ms(job.attempts)
            delayed = job.model_copy(
                update={
                    "status": JobStatus.DELAYED,
                    "error": reason,
                    "next_run_at_ms": now_ms + delay_ms,
                }
            )
            await self._backend.reschedule(delayed)
            logger.warning(
                "job_retry_scheduled queue=%s job_id=%s attempt=%s/%s delay_ms=%s error=%s",
                job.queue_name,
                job.id,
                job.attempts,
                job.max_attempts,
                delay_ms,
                reason,
            )
            return delayed

        failed = job.model_copy(
            update={
                "status": JobStatus.FAILED,
                "error": reason,
                "finished_at_ms": now_ms,
            }
        )
        await self._backend.finish(failed, retention_s=self._settings.job_failed_retention_s)
        logger.error(
            "job_failed_terminal queue=%s job_id=%s attempts=%s retryable=%s error=%s",
            job.queue_name,
            job.id,
            job.attempts,
            retryable,
            reason,
        )
        return failed

    async def get_job(self, queue_name: str, job_id: str) -> Job | None:
        return await self._backend.get(queue_name, job_id)

    async def get_progress(self, queue_name: str, job_id: str) -> int | None:
        job = await self._backend.get(queue_name, job_id)
        return job.progress if job else None

    async def metrics(self, queue_name: str) -> QueueMetrics:
        counts = await self._backend.counts(queue_name)
        return QueueMetrics(queue_name=queue_name, **counts)

    async def recover_stalled(self, queue_name: str) -> StalledSweep:
        requeued, exhausted = await self._backend.recover_stalled(
            queue_name,
            now_ms=self.now_ms(),
            failed_retention_s=self._settings.job_failed_retention_s,
        )
        failed = [job for job in [await self._backend.get(queue_name, job_id) for job_id in exhausted] if job]
        if requeued:
            logger.warning("jobs_recovered_stalled queue=%s count=%s", queue_name, len(requeued))
        for job in failed:
            logger.error(
                "job_failed_terminal queue=%s job_id=%s attempts=%s retryable=False error=stalled",
                queue_name,
                job.id,
                job.attempts,
            )
        return StalledSweep(requeued=requeued, failed=failed)

    async def prune(self, queue_name: str) -> int:
        # Drop finished jobs whose retention window has lapsed.
        now_ms = self.now_ms()
        removed = await self._backend.prune(
            queue_name,
            status=JobStatus.COMPLETED,
            older_than_ms=now_ms - self._settings.job_completed_retention_s * 1000,
        )
        removed += await self._backend.prune(
            queue_name,
            status=JobStatus.FAILED,
            older_than_ms=now_ms - self._settings.job_failed_retention_s * 1000,
        )
        return removed

    async def touch_heartbeat(self, worker_name: str) -> None:
        await self._backend.touch_heartbeat(
            worker_name,
            now_ms=self.now_ms(),
            ttl_s=self._settings.worker_heartbeat_stale_after_s * 2,
        )

    async def heartbeat_age_s(self, worker_name: str) -> float | None:
        # None when the worker never reported or its key expired.
        last_ms = await self._backend.read_heartbeat(worker_name)
        if last_ms is None:
            return None
        return max(0.0, (self.now_ms() - last_ms) / 1000.0)
