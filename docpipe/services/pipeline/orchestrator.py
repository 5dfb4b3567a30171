from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Mapping
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.core.config import Settings, get_settings
from docpipe.core.errors import (
    NotFoundError,
    TerminalExecutionError,
    TransientExecutionError,
    ValidationError,
)
from docpipe.domain.events import (
    DocumentAnalyzedData,
    DomainEvent,
    EnhancementCompletedData,
    EnhancementFailedData,
    EnhancementProgressData,
    EnhancementStartedData,
    EventData,
    ExportCompletedData,
)
from docpipe.domain.models import EnhancementRun
from docpipe.domain.state import (
    STAGE_PROGRESS,
    RunStatus,
    Stage,
    is_forward_transition,
    next_stage,
    normalize_tier,
    priority_for_tier,
)
from docpipe.persistence.repos import runs as runs_repo
from docpipe.services.events import EventPublisher
from docpipe.services.pipeline.stages import (
    StageExecutor,
    StageInput,
    build_stage_executors,
)
from docpipe.services.queue.client import JobQueue
from docpipe.services.queue.models import Job
from docpipe.services.queue.worker import JobContext


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StageJobPayload(BaseModel):
    run_id: str
    document_id: str
    user_id: str
    tier: str
    stage: Stage


def _completed_outputs(history: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        str(entry.get("stage")): entry.get("output") or {}
        for entry in history
        if entry.get("status") == "completed"
    }


class PipelineOrchestrator:
    """Drives one EnhancementRun per submission through analysis, enhancement and export."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        publisher: EventPublisher,
        executors: Mapping[Stage, StageExecutor] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._publisher = publisher
        self._executors = dict(executors) if executors is not None else build_stage_executors()
        self._settings = settings or get_settings()

    def queue_for_stage(self, stage: Stage) -> str:
        settings = self._settings
        if stage == Stage.ANALYSIS:
            return settings.analysis_queue_name
        if stage == Stage.ENHANCEMENT:
            return settings.enhancement_queue_name
        if stage == Stage.EXPORT:
            return settings.export_queue_name
        raise ValueError(f"stage {stage} has no queue")

    @property
    def stage_queues(self) -> dict[Stage, str]:
        return {stage: self.queue_for_stage(stage) for stage in self._executors}

    async def submit(self, document_id: str, user_id: str, tier: str | None) -> str:
        # Callers run admission control first; this only creates the run and queues analysis.
        if not document_id or not user_id:
            raise ValidationError("document_id and user_id are required")
        resolved_tier = normalize_tier(tier).value
        run_id = uuid4().hex
        async with self._session_factory() as session:
            await runs_repo.create_run(
                session,
                run_id=run_id,
                document_id=document_id,
                user_id=user_id,
                tier=resolved_tier,
                started_at=_utc_now(),
            )
            await session.commit()
        logger.info(
            "enhancement_run_created run_id=%s document_id=%s user_id=%s tier=%s",
            run_id,
            document_id,
            user_id,
            resolved_tier,
        )
        await self._publish(
            user_id,
            EnhancementStartedData(run_id=run_id, document_id=document_id),
        )
        try:
            await self._enqueue_stage(
                run_id=run_id,
                document_id=document_id,
                user_id=user_id,
                tier=resolved_tier,
                stage=Stage.ANALYSIS,
            )
        except Exception as exc:
            await self.fail_run(run_id, f"enqueue_failed: {type(exc).__name__}")
            raise
        return run_id

    async def get_run_status(self, run_id: str) -> EnhancementRun | None:
        async with self._session_factory() as session:
            return await runs_repo.get_run(session, run_id)

    async def get_user_run_status(self, user_id: str, run_id: str) -> EnhancementRun | None:
        async with self._session_factory() as session:
            return await runs_repo.get_user_run(session, user_id, run_id)

    async def execute_stage(self, job: Job, context: JobContext) -> dict[str, Any]:
        # Queue handler for every stage queue.
        payload = StageJobPayload.model_validate(job.payload)
        async with self._session_factory() as session:
            run = await runs_repo.get_run(session, payload.run_id)
        if run is None:
            raise NotFoundError(f"enhancement run {payload.run_id} not found")
        if run.current_stage != payload.stage.value:
            # Already advanced or failed; a failed run never executes further stages.
            logger.info(
                "stage_execution_skipped run_id=%s stage=%s current_stage=%s",
                run.id,
                payload.stage.value,
                run.current_stage,
            )
            return {"stage": payload.stage.value, "skipped": True, "current_stage": run.current_stage}

        executor = self._executors.get(payload.stage)
        if executor is None:
            raise TerminalExecutionError(f"no executor registered for stage {payload.stage.value}")
        stage_input = StageInput(
            run_id=run.id,
            document_id=run.document_id,
            user_id=run.user_id,
            tier=run.tier,
            stage=payload.stage,
            previous_outputs=_completed_outputs(list(run.stage_history or [])),
            attempt=job.attempts,
        )
        await context.update_progress(10)
        try:
            result = await asyncio.wait_for(executor(stage_input), timeout=self._settings.stage_timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransientExecutionError(f"stage {payload.stage.value} timed out") from exc
        if not result.success:
            raise TerminalExecutionError(result.error or f"stage {payload.stage.value} failed")
        return {"stage": payload.stage.value, "output": result.output}

    async def handle_stage_completed(self, job: Job) -> None:
        payload = StageJobPayload.model_validate(job.payload)
        result = job.result or {}
        if result.get("skipped"):
            return
        stage = payload.stage
        target = next_stage(stage)
        output = dict(result.get("output") or {})
        now = _utc_now()

        async with self._session_factory() as session:
            run = await runs_repo.get_run(session, payload.run_id)
            if run is None or run.current_stage != stage.value or not is_forward_transition(stage, target):
                logger.info(
                    "stage_callback_ignored run_id=%s stage=%s current_stage=%s",
                    payload.run_id,
                    stage.value,
                    run.current_stage if run else None,
                )
                return
            history = list(run.stage_history or [])
            history.append(
                {
                    "stage": stage.value,
                    "status": "completed",
                    "job_id": job.id,
                    "attempts": job.attempts,
                    "output": output,
                    "finished_at": now.isoformat(),
                }
            )
            values: dict[str, Any] = {
                "current_stage": target.value,
                "stage_history": history,
                "progress": STAGE_PROGRESS[target],
                "current_job_id": None,
            }
            if target == Stage.COMPLETE:
                values["overall_status"] = RunStatus.COMPLETED.value
                values["completed_at"] = now
            advanced = await runs_repo.compare_and_set_stage(
                session, run.id, expected_stage=stage.value, values=values
            )
            if not advanced:
                await session.rollback()
                logger.info("stage_callback_lost_race run_id=%s stage=%s", payload.run_id, stage.value)
                return
            await session.commit()

        logger.info("enhancement_stage_completed run_id=%s stage=%s next=%s", run.id, stage.value, target.value)
        if stage == Stage.ANALYSIS:
            await self._publish(
                run.user_id,
                DocumentAnalyzedData(run_id=run.id, document_id=run.document_id, analysis=output),
            )
        if stage == Stage.EXPORT:
            await self._publish(
                run.user_id,
                ExportCompletedData(run_id=run.id, document_id=run.document_id, export=output),
            )

        if target == Stage.COMPLETE:
            await self._publish(
                run.user_id,
                EnhancementCompletedData(
                    run_id=run.id,
                    document_id=run.document_id,
                    output=_completed_outputs(history),
                ),
            )
            return

        await self._publish(
            run.user_id,
            EnhancementProgressData(
                run_id=run.id,
                document_id=run.document_id,
                stage=target.value,
                progress=STAGE_PROGRESS[target],
            ),
        )
        try:
            await self._enqueue_stage(
                run_id=run.id,
                document_id=run.document_id,
                user_id=run.user_id,
                tier=run.tier,
                stage=target,
            )
        except Exception as exc:  # noqa: BLE001 - a run without a queued stage must not look alive
            logger.exception("stage_enqueue_failed run_id=%s stage=%s", run.id, target.value)
            await self._fail(
                run.id,
                expected_stage=target,
                reason=f"enqueue_failed: {type(exc).__name__}",
            )

    async def handle_stage_failed(self, job: Job) -> None:
        payload = StageJobPayload.model_validate(job.payload)
        await self._fail(
            payload.run_id,
            expected_stage=payload.stage,
            reason=job.error or "stage failed",
            job=job,
        )

    async def fail_run(self, run_id: str, reason: str) -> bool:
        # External cancellation: freeze the run; in-flight stage jobs finish but cannot advance it.
        async with self._session_factory() as session:
            run = await runs_repo.get_run(session, run_id)
        if run is None:
            raise NotFoundError(f"enhancement run {run_id} not found")
        if not is_forward_transition(Stage(run.current_stage), Stage.FAILED):
            return False
        return await self._fail(run_id, expected_stage=Stage(run.current_stage), reason=reason)

    async def _fail(
        self,
        run_id: str,
        *,
        expected_stage: Stage,
        reason: str,
        job: Job | None = None,
    ) -> bool:
        now = _utc_now()
        async with self._session_factory() as session:
            run = await runs_repo.get_run(session, run_id)
            stale = run is None or run.current_stage != expected_stage.value
            if stale or not is_forward_transition(expected_stage, Stage.FAILED):
                logger.info(
                    "stage_failure_ignored run_id=%s stage=%s current_stage=%s",
                    run_id,
                    expected_stage.value,
                    run.current_stage if run else None,
                )
                return False
            history = list(run.stage_history or [])
            history.append(
                {
                    "stage": expected_stage.value,
                    "status": "failed",
                    "job_id": job.id if job else None,
                    "attempts": job.attempts if job else None,
                    "error": reason,
                    "finished_at": now.isoformat(),
                }
            )
            failed = await runs_repo.compare_and_set_stage(
                session,
                run_id,
                expected_stage=expected_stage.value,
                values={
                    "current_stage": Stage.FAILED.value,
                    "overall_status": RunStatus.FAILED.value,
                    "stage_history": history,
                    "error": reason,
                    "current_job_id": None,
                    "completed_at": now,
                },
            )
            if not failed:
                await session.rollback()
                return False
            await session.commit()

        logger.warning(
            "enhancement_run_failed run_id=%s stage=%s error=%s",
            run_id,
            expected_stage.value,
            reason,
        )
        await self._publish(
            run.user_id,
            EnhancementFailedData(
                run_id=run_id,
                document_id=run.document_id,
                stage=expected_stage.value,
                error=reason,
            ),
        )
        return True

    async def _enqueue_stage(
        self,
        *,
        run_id: str,
        document_id: str,
        user_id: str,
        tier: str,
        stage: Stage,
    ) -> str:
        payload = StageJobPayload(
            run_id=run_id,
            document_id=document_id,
            user_id=user_id,
            tier=tier,
            stage=stage,
        )
        job_id = await self._queue.enqueue(
            self.queue_for_stage(stage),
            payload.model_dump(mode="json"),
            priority=priority_for_tier(tier),
            job_id=f"{run_id}-{stage.value}",
        )
        async with self._session_factory() as session:
            await runs_repo.set_current_job(session, run_id, stage=stage.value, job_id=job_id)
            await session.commit()
        return job_id

    async def _publish(self, owner_id: str, data: EventData) -> None:
        # Publishing is decoupled from subscribers; delivery failures never roll back the run.
        try:
            await self._publisher.publish(DomainEvent(owner_id=owner_id, data=data))
        except Exception:  # noqa: BLE001 - run state is already committed
            logger.exception("event_publish_failed owner_id=%s event_type=%s", owner_id, data.event)
