from __future__ import annotations

import argparse
import asyncio

from docpipe.core.logging import configure_logging
from docpipe.services.container import build_container
from docpipe.services.store import close_redis


async def prune(days_to_keep: int | None) -> None:
    configure_logging()
    container = build_container()
    try:
        deleted = await container.webhooks.cleanup_old_delivery_logs(days_to_keep)
        print(f"pruned_webhook_delivery_attempts={deleted}")
    finally:
        await container.aclose()
        await close_redis()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete webhook delivery log rows past retention.")
    parser.add_argument("--days", type=int, default=None, help="Days to keep; defaults to settings.")
    args = parser.parse_args()
    asyncio.run(prune(args.days))
