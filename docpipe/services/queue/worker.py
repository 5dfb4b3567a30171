from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable

from docpipe.core.config import get_settings
from docpipe.core.logging import request_id_var
from docpipe.services.queue.client import JobQueue
from docpipe.services.queue.models import Job, JobStatus


logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    queue: JobQueue
    job: Job

    async def update_progress(self, percent: int) -> None:
        await self.queue.update_progress(self.job.queue_name, self.job.id, percent)


JobHandler = Callable[[Job, JobContext], Awaitable[dict[str, Any] | None]]
JobHook = Callable[[Job], Awaitable[None]]


class WorkerPool:
    """N concurrent consumers for one queue; a failing job never stops a consumer."""

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handler: JobHandler,
        *,
        concurrency: int | None = None,
        on_completed: JobHook | None = None,
        on_failed: JobHook | None = None,
        poll_interval_s: float | None = None,
        claim_timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self.queue = queue
        self.queue_name = queue_name
        self._handler = handler
        self.concurrency = max(1, int(concurrency or queue.config_for(queue_name).concurrency))
        self._on_completed = on_completed
        self._on_failed = on_failed
        self._poll_interval_s = (
            poll_interval_s if poll_interval_s is not None else settings.worker_poll_interval_ms / 1000.0
        )
        self._claim_timeout_s = (
            claim_timeout_s if claim_timeout_s is not None else settings.worker_claim_timeout_s
        )
        self._stopping = asyncio.Event()

    async def process_next(self) -> Job | None:
        # Claim and run at most one job without waiting; used by tests and inline drains.
        job = await self.queue.claim(self.queue_name)
        if job is None:
            return None
        return await self.process_job(job)

    async def drain(self, *, max_jobs: int = 1000) -> list[Job]:
        processed: list[Job] = []
        while len(processed) < max_jobs:
            job = await self.process_next()
            if job is None:
                break
            processed.append(job)
        return processed

    async def process_job(self, job: Job) -> Job:
        token = request_id_var.set(f"job:{job.id}")
        try:
            context = JobContext(queue=self.queue, job=job)
            try:
                result = await self._handler(job, context)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - one job's failure must not stop the consumer
                updated = await self.queue.fail(job, exc)
                if updated.status == JobStatus.FAILED:
                    await self._run_hook(self._on_failed, updated)
                return updated
            updated = await self.queue.complete(job, result)
            await self._run_hook(self._on_completed, updated)
            return updated
        finally:
            request_id_var.reset(token)

    async def recover_stalled(self) -> int:
        # Jobs failed for stalling on their last attempt still reach the failure hook.
        sweep = await self.queue.recover_stalled(self.queue_name)
        for job in sweep.failed:
            await self._run_hook(self._on_failed, job)
        return sweep.total

    async def _run_hook(self, hook: JobHook | None, job: Job) -> None:
        if hook is None:
            return
        try:
            await hook(job)
        except Exception:  # noqa: BLE001 - job state is already durable; surface hook failures in logs
            logger.exception("job_hook_failed queue=%s job_id=%s status=%s", job.queue_name, job.id, job.status)

    async def _consume(self, index: int) -> None:
        logger.info("worker_consumer_started queue=%s consumer=%s", self.queue_name, index)
        while not self._stopping.is_set():
            try:
                job = await self.queue.claim_wait(
                    self.queue_name,
                    timeout_s=self._claim_timeout_s,
                    poll_interval_s=self._poll_interval_s,
                )
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep consuming through store outages
                logger.exception("worker_claim_failed queue=%s consumer=%s", self.queue_name, index)
                await asyncio.sleep(self._poll_interval_s)
                continue
            if job is None:
                continue
            try:
                await self.process_job(job)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - store write failures leave the job to stalled recovery
                logger.exception("worker_job_bookkeeping_failed queue=%s job_id=%s", self.queue_name, job.id)
        logger.info("worker_consumer_stopped queue=%s consumer=%s", self.queue_name, index)

    async def run(self) -> None:
        self._stopping.clear()
        consumers = [asyncio.create_task(self._consume(index)) for index in range(self.concurrency)]
        try:
            await asyncio.gather(*consumers)
        finally:
            for task in consumers:
                task.cancel()

    def stop(self) -> None:
        # Consumers exit after their current claim poll times out.
        self._stopping.set()
