from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel

from docpipe.apps.api.deps import Principal, get_container, get_current_principal
from docpipe.apps.api.rate_limit import rate_limited
from docpipe.apps.api.response import SuccessEnvelope, success_response
from docpipe.domain.state import RunStatus, Stage, priority_for_tier
from docpipe.services.container import ServiceContainer
from docpipe.services.rate_limit import ENDPOINT_DEFAULT


logger = logging.getLogger(__name__)
router = APIRouter(tags=["enhancement"])


class EnhanceAccepted(BaseModel):
    run_id: str
    document_id: str
    status: str
    current_stage: str
    priority: int


@router.post(
    "/documents/{document_id}/enhance",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[EnhanceAccepted],
    dependencies=[Depends(rate_limited(ENDPOINT_DEFAULT))],
)
async def enhance_document(
    document_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Admission control already ran as a route dependency; only admitted requests create runs.
    run_id = await container.orchestrator.submit(document_id, principal.user_id, principal.tier.value)
    payload = EnhanceAccepted(
        run_id=run_id,
        document_id=document_id,
        status=RunStatus.PROCESSING.value,
        current_stage=Stage.ANALYSIS.value,
        priority=priority_for_tier(principal.tier),
    )
    return success_response(request=request, data=payload)
