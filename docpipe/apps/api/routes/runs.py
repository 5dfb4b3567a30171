from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from docpipe.apps.api.deps import Principal, get_container, get_current_principal
from docpipe.apps.api.response import SuccessEnvelope, success_response
from docpipe.domain.models import EnhancementRun
from docpipe.services.container import ServiceContainer

router = APIRouter(tags=["runs"])


class RunResponse(BaseModel):
    run_id: str
    document_id: str
    tier: str
    current_stage: str
    overall_status: str
    progress: int
    stage_history: list[dict[str, Any]]
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _to_response(run: EnhancementRun) -> RunResponse:
    return RunResponse(
        run_id=run.id,
        document_id=run.document_id,
        tier=run.tier,
        current_stage=run.current_stage,
        overall_status=run.overall_status,
        progress=int(run.progress or 0),
        stage_history=list(run.stage_history or []),
        error=run.error,
        started_at=run.started_at,
        completed_at=run.completed_at,
    )


@router.get("/runs/{run_id}", response_model=SuccessEnvelope[RunResponse])
async def get_run(
    run_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Other users' runs look exactly like missing ones.
    run = await container.orchestrator.get_user_run_status(principal.user_id, run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Run not found"},
        )
    return success_response(request=request, data=_to_response(run))
