from __future__ import annotations

import asyncio
import logging

from docpipe.core.logging import configure_logging
from docpipe.services.container import ServiceContainer, build_container
from docpipe.services.store import close_redis
from docpipe.workers.runtime import WEBHOOK_WORKER, run_worker


logger = logging.getLogger(__name__)


async def _prune_delivery_logs_loop(container: ServiceContainer) -> None:
    # Daily retention pass over the delivery log.
    while True:
        try:
            await container.webhooks.cleanup_old_delivery_logs()
        except Exception:  # noqa: BLE001 - retention retries on the next pass
            logger.warning("webhook_delivery_prune_failed", exc_info=True)
        await asyncio.sleep(24 * 3600)


async def run() -> None:
    configure_logging()
    container = build_container()
    try:
        await run_worker(
            container,
            worker_name=WEBHOOK_WORKER,
            pools=[container.webhook_worker_pool()],
            extra_tasks=[lambda: _prune_delivery_logs_loop(container)],
        )
    finally:
        await container.aclose()
        await close_redis()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
