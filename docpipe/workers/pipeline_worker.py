from __future__ import annotations

import asyncio
import logging

from docpipe.core.logging import configure_logging
from docpipe.services.container import ServiceContainer, build_container
from docpipe.services.store import close_redis
from docpipe.workers.runtime import PIPELINE_WORKER, run_worker


logger = logging.getLogger(__name__)


async def _startup() -> ServiceContainer:
    configure_logging()
    container = build_container()
    logger.info("pipeline_worker_booting queues=%s", ",".join(container.orchestrator.stage_queues.values()))
    return container


async def _shutdown(container: ServiceContainer) -> None:
    await container.aclose()
    await close_redis()


async def run() -> None:
    # Stage pools run here; domain events fan out to webhooks from this process.
    container = await _startup()
    try:
        await run_worker(
            container,
            worker_name=PIPELINE_WORKER,
            pools=container.stage_worker_pools(),
        )
    finally:
        await _shutdown(container)


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
