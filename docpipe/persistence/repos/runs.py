from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.domain.models import EnhancementRun
from docpipe.domain.state import RunStatus, Stage


async def create_run(
    session: AsyncSession,
    *,
    run_id: str,
    document_id: str,
    user_id: str,
    tier: str,
    started_at: datetime,
) -> EnhancementRun:
    run = EnhancementRun(
        id=run_id,
        document_id=document_id,
        user_id=user_id,
        tier=tier,
        current_stage=Stage.ANALYSIS.value,
        overall_status=RunStatus.PROCESSING.value,
        stage_history=[],
        progress=0,
        started_at=started_at,
    )
    session.add(run)
    return run


async def get_run(session: AsyncSession, run_id: str) -> EnhancementRun | None:
    result = await session.execute(select(EnhancementRun).where(EnhancementRun.id == run_id))
    return result.scalar_one_or_none()


async def get_user_run(session: AsyncSession, user_id: str, run_id: str) -> EnhancementRun | None:
    # Return None for owner mismatch to keep 404 semantics.
    result = await session.execute(
        select(EnhancementRun).where(EnhancementRun.id == run_id, EnhancementRun.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def compare_and_set_stage(
    session: AsyncSession,
    run_id: str,
    *,
    expected_stage: str,
    values: dict[str, Any],
) -> bool:
    # Conditional UPDATE is the only write path for stage changes; a stale caller matches zero rows.
    result = await session.execute(
        update(EnhancementRun)
        .where(EnhancementRun.id == run_id, EnhancementRun.current_stage == expected_stage)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def set_current_job(session: AsyncSession, run_id: str, *, stage: str, job_id: str) -> bool:
    # Only attach the job while the run is still on the stage it was enqueued for.
    result = await session.execute(
        update(EnhancementRun)
        .where(EnhancementRun.id == run_id, EnhancementRun.current_stage == stage)
        .values(current_job_id=job_id)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
