from __future__ import annotations

import asyncio
import logging
import signal
from typing import Awaitable, Callable

from docpipe.services.container import ServiceContainer
from docpipe.services.queue import WorkerPool


logger = logging.getLogger(__name__)

PIPELINE_WORKER = "pipeline-worker"
WEBHOOK_WORKER = "webhook-worker"
WORKER_NAMES = (PIPELINE_WORKER, WEBHOOK_WORKER)


async def heartbeat_loop(container: ServiceContainer, worker_name: str) -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    interval = max(1, container.settings.worker_heartbeat_interval_s)
    while True:
        try:
            await container.queue.touch_heartbeat(worker_name)
        except Exception:  # noqa: BLE001 - a missed heartbeat only shows up as staleness
            logger.warning("worker_heartbeat_failed worker=%s", worker_name, exc_info=True)
        await asyncio.sleep(interval)


async def maintenance_loop(container: ServiceContainer, pools: list[WorkerPool]) -> None:
    # Requeue jobs whose lease lapsed and drop finished jobs past retention.
    interval = max(1, container.settings.worker_maintenance_interval_s)
    while True:
        for pool in pools:
            try:
                await pool.recover_stalled()
                pruned = await container.queue.prune(pool.queue_name)
                if pruned:
                    logger.info("jobs_pruned queue=%s count=%s", pool.queue_name, pruned)
            except Exception:  # noqa: BLE001 - maintenance retries on the next tick
                logger.warning("queue_maintenance_failed queue=%s", pool.queue_name, exc_info=True)
        await asyncio.sleep(interval)


async def run_worker(
    container: ServiceContainer,
    *,
    worker_name: str,
    pools: list[WorkerPool],
    extra_tasks: list[Callable[[], Awaitable[None]]] | None = None,
) -> None:
    """Run pools until SIGINT/SIGTERM, then let consumers finish their current job."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    queue_names = [pool.queue_name for pool in pools]
    background = [
        asyncio.create_task(heartbeat_loop(container, worker_name)),
        asyncio.create_task(maintenance_loop(container, pools)),
    ]
    background.extend(asyncio.create_task(factory()) for factory in extra_tasks or [])
    pool_tasks = [asyncio.create_task(pool.run()) for pool in pools]
    logger.info("worker_started worker=%s queues=%s", worker_name, ",".join(queue_names))
    try:
        await stop.wait()
    finally:
        logger.info("worker_stopping worker=%s", worker_name)
        for pool in pools:
            pool.stop()
        await asyncio.gather(*pool_tasks, return_exceptions=True)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        logger.info("worker_stopped worker=%s", worker_name)
