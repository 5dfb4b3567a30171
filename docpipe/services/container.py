from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.core.config import Settings, get_settings
from docpipe.domain.state import Stage
from docpipe.services.events import EventBus
from docpipe.services.pipeline.orchestrator import PipelineOrchestrator
from docpipe.services.pipeline.stages import StageExecutor, build_stage_executors
from docpipe.services.queue import (
    InMemoryQueueBackend,
    JobQueue,
    QueueBackend,
    RedisQueueBackend,
    WorkerPool,
)
from docpipe.services.rate_limit import (
    InMemoryWindowStore,
    RedisWindowStore,
    SlidingWindowRateLimiter,
    WindowStore,
)
from docpipe.services.store import get_redis
from docpipe.services.webhooks.delivery import WebhookDeliveryWorker
from docpipe.services.webhooks.manager import WebhookManager


@dataclass
class ServiceContainer:
    """Explicitly wired services shared by the API process and the workers."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    queue: JobQueue
    rate_limiter: SlidingWindowRateLimiter
    events: EventBus
    orchestrator: PipelineOrchestrator
    webhooks: WebhookManager
    delivery: WebhookDeliveryWorker

    def stage_worker_pools(self) -> list[WorkerPool]:
        # One pool per stage queue; stage completion hooks drive the run forward.
        return [
            WorkerPool(
                self.queue,
                queue_name,
                self.orchestrator.execute_stage,
                on_completed=self.orchestrator.handle_stage_completed,
                on_failed=self.orchestrator.handle_stage_failed,
            )
            for queue_name in self.orchestrator.stage_queues.values()
        ]

    def webhook_worker_pool(self) -> WorkerPool:
        return WorkerPool(self.queue, self.settings.webhook_queue_name, self.delivery.process)

    @property
    def queue_names(self) -> list[str]:
        return [*self.orchestrator.stage_queues.values(), self.settings.webhook_queue_name]

    async def aclose(self) -> None:
        await self.delivery.aclose()


def build_container(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
    queue_backend: QueueBackend | None = None,
    window_store: WindowStore | None = None,
    executors: Mapping[Stage, StageExecutor] | None = None,
    http_client: httpx.AsyncClient | None = None,
    time_provider: Callable[[], float] | None = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    if session_factory is None:
        from docpipe.persistence.db import SessionLocal

        session_factory = SessionLocal
    memory = settings.store_backend.strip().lower() == "memory"
    if queue_backend is None:
        queue_backend = (
            InMemoryQueueBackend()
            if memory
            else RedisQueueBackend(get_redis, prefix=settings.queue_redis_prefix)
        )
    if window_store is None:
        window_store = InMemoryWindowStore() if memory else RedisWindowStore(get_redis)

    queue = JobQueue(queue_backend, settings=settings, time_provider=time_provider)
    events = EventBus()
    orchestrator = PipelineOrchestrator(
        session_factory=session_factory,
        queue=queue,
        publisher=events,
        executors=build_stage_executors(executors),
        settings=settings,
    )
    webhooks = WebhookManager(session_factory=session_factory, queue=queue, settings=settings)
    # Every domain event fans out to subscribed webhooks.
    events.subscribe(webhooks.handle_event)
    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        queue=queue,
        rate_limiter=SlidingWindowRateLimiter(
            window_store,
            prefix=settings.rl_redis_prefix,
            fail_mode=settings.rl_fail_mode,
            time_provider=time_provider,
        ),
        events=events,
        orchestrator=orchestrator,
        webhooks=webhooks,
        delivery=WebhookDeliveryWorker(
            session_factory=session_factory,
            http_client=http_client,
            settings=settings,
        ),
    )
