from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from docpipe.apps.api.deps import Principal, get_container, get_current_principal
from docpipe.apps.api.response import success_response
from docpipe.services.container import ServiceContainer
from docpipe.workers.runtime import WORKER_NAMES

router = APIRouter(prefix="/ops", tags=["ops"])


@router.get("/queues")
async def queue_overview(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    queues: list[dict[str, Any]] = []
    for queue_name in container.queue_names:
        metrics = await container.queue.metrics(queue_name)
        config = container.queue.config_for(queue_name)
        queues.append(
            {
                **metrics.as_dict(),
                "concurrency": config.concurrency,
                "rate_max": config.rate_max,
                "rate_window_ms": config.rate_window_ms,
            }
        )
    stale_after = container.settings.worker_heartbeat_stale_after_s
    workers: list[dict[str, Any]] = []
    for worker_name in WORKER_NAMES:
        age_s = await container.queue.heartbeat_age_s(worker_name)
        workers.append(
            {
                "name": worker_name,
                "heartbeat_age_s": round(age_s, 3) if age_s is not None else None,
                "stale": age_s is None or age_s > stale_after,
            }
        )
    return success_response(request=request, data={"queues": queues, "workers": workers})
