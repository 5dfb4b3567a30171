from __future__ import annotations

import asyncio

import pytest

from docpipe.core.config import get_settings
from docpipe.domain.events import EventType
from docpipe.domain.state import Priority, Stage
from docpipe.services.events import RecordingPublisher
from docpipe.services.pipeline.orchestrator import PipelineOrchestrator
from docpipe.services.pipeline.stages import StageResult, build_stage_executors
from docpipe.services.queue import JobQueue, JobStatus, WorkerPool


def _orchestrator(session_factory, queue, publisher, executors=None, settings=None) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        session_factory=session_factory,
        queue=queue,
        publisher=publisher,
        executors=build_stage_executors(executors),
        settings=settings or get_settings(),
    )


def _pools(orchestrator: PipelineOrchestrator, queue: JobQueue) -> dict[Stage, WorkerPool]:
    return {
        stage: WorkerPool(
            queue,
            queue_name,
            orchestrator.execute_stage,
            on_completed=orchestrator.handle_stage_completed,
            on_failed=orchestrator.handle_stage_failed,
        )
        for stage, queue_name in orchestrator.stage_queues.items()
    }


@pytest.mark.asyncio
async def test_run_advances_through_every_stage(session_factory, queue) -> None:
    publisher = RecordingPublisher()
    orchestrator = _orchestrator(session_factory, queue, publisher)
    pools = _pools(orchestrator, queue)

    run_id = await orchestrator.submit("doc-1", "user-1", "pro")
    run = await orchestrator.get_run_status(run_id)
    assert run.current_stage == Stage.ANALYSIS.value
    assert run.progress == 0
    assert run.current_job_id == f"{run_id}-analysis"

    analysis_job = await queue.get_job("analysis", f"{run_id}-analysis")
    assert analysis_job.priority == Priority.HIGH

    progress: list[int] = []
    for stage in (Stage.ANALYSIS, Stage.ENHANCEMENT, Stage.EXPORT):
        processed = await pools[stage].drain()
        assert [job.status for job in processed] == [JobStatus.COMPLETED]
        run = await orchestrator.get_run_status(run_id)
        progress.append(run.progress)

    assert progress == [25, 75, 100]
    assert run.current_stage == Stage.COMPLETE.value
    assert run.overall_status == "completed"
    assert run.completed_at is not None
    assert [entry["stage"] for entry in run.stage_history] == ["analysis", "enhancement", "export"]

    assert [event.event_type for event in publisher.events] == [
        EventType.ENHANCEMENT_STARTED,
        EventType.DOCUMENT_ANALYZED,
        EventType.ENHANCEMENT_PROGRESS,
        EventType.ENHANCEMENT_PROGRESS,
        EventType.EXPORT_COMPLETED,
        EventType.ENHANCEMENT_COMPLETED,
    ]
    completed = publisher.of_type(EventType.ENHANCEMENT_COMPLETED)[0]
    assert set(completed.data.output) == {"analysis", "enhancement", "export"}


@pytest.mark.asyncio
async def test_stage_failure_fails_the_run_and_stops_the_pipeline(session_factory, queue) -> None:
    publisher = RecordingPublisher()

    async def broken_analysis(stage_input):
        return StageResult.failed("unsupported format")

    orchestrator = _orchestrator(session_factory, queue, publisher, {Stage.ANALYSIS: broken_analysis})
    pools = _pools(orchestrator, queue)

    run_id = await orchestrator.submit("doc-2", "user-1", "free")
    processed = await pools[Stage.ANALYSIS].drain()

    assert [job.status for job in processed] == [JobStatus.FAILED]
    run = await orchestrator.get_run_status(run_id)
    assert run.current_stage == Stage.FAILED.value
    assert run.overall_status == "failed"
    assert "unsupported format" in run.error
    assert await pools[Stage.ENHANCEMENT].drain() == []

    failed = publisher.of_type(EventType.ENHANCEMENT_FAILED)
    assert len(failed) == 1
    assert failed[0].data.stage == "analysis"


@pytest.mark.asyncio
async def test_duplicate_completion_callback_is_ignored(session_factory, queue) -> None:
    publisher = RecordingPublisher()
    orchestrator = _orchestrator(session_factory, queue, publisher)

    run_id = await orchestrator.submit("doc-3", "user-1", "basic")
    job = await queue.claim("analysis")
    result = await orchestrator.execute_stage(job, _NullContext())
    finished = await queue.complete(job, result)

    await orchestrator.handle_stage_completed(finished)
    await orchestrator.handle_stage_completed(finished)

    run = await orchestrator.get_run_status(run_id)
    assert run.current_stage == Stage.ENHANCEMENT.value
    assert len(run.stage_history) == 1
    assert len(publisher.of_type(EventType.ENHANCEMENT_PROGRESS)) == 1
    metrics = await queue.metrics("enhancement")
    assert metrics.waiting == 1


@pytest.mark.asyncio
async def test_failed_run_never_advances(session_factory, queue) -> None:
    publisher = RecordingPublisher()
    orchestrator = _orchestrator(session_factory, queue, publisher)
    pools = _pools(orchestrator, queue)

    run_id = await orchestrator.submit("doc-4", "user-1", "premium")
    assert await orchestrator.fail_run(run_id, "cancelled") is True
    assert await orchestrator.fail_run(run_id, "cancelled again") is False

    processed = await pools[Stage.ANALYSIS].drain()
    assert processed[0].result["skipped"] is True

    run = await orchestrator.get_run_status(run_id)
    assert run.current_stage == Stage.FAILED.value
    assert run.error == "cancelled"
    assert await pools[Stage.ENHANCEMENT].drain() == []
    assert len(publisher.of_type(EventType.ENHANCEMENT_FAILED)) == 1


@pytest.mark.asyncio
async def test_stage_timeout_is_retried(session_factory, queue, clock) -> None:
    publisher = RecordingPublisher()
    calls: list[int] = []

    async def slow_then_fast(stage_input):
        calls.append(stage_input.attempt)
        if stage_input.attempt == 1:
            await asyncio.sleep(1)
        return StageResult.ok({"pages": 3})

    settings = get_settings().model_copy(update={"stage_timeout_s": 0.05})
    orchestrator = _orchestrator(
        session_factory, queue, publisher, {Stage.ANALYSIS: slow_then_fast}, settings=settings
    )
    pools = _pools(orchestrator, queue)

    run_id = await orchestrator.submit("doc-5", "user-1", "pro")
    first = await pools[Stage.ANALYSIS].process_next()
    assert first.status == JobStatus.DELAYED
    assert "timed out" in first.error

    clock.advance_ms(first.backoff.delay_ms(1))
    second = await pools[Stage.ANALYSIS].process_next()
    assert second.status == JobStatus.COMPLETED
    assert calls == [1, 2]

    run = await orchestrator.get_run_status(run_id)
    assert run.current_stage == Stage.ENHANCEMENT.value
    assert run.stage_history[0]["output"] == {"pages": 3}


class _NullContext:
    async def update_progress(self, percent: int) -> None:
        return None


@pytest.mark.asyncio
async def test_completed_run_rejects_late_failures(session_factory, queue) -> None:
    publisher = RecordingPublisher()
    orchestrator = _orchestrator(session_factory, queue, publisher)
    pools = _pools(orchestrator, queue)

    run_id = await orchestrator.submit("doc-6", "user-1", "pro")
    analysis_job = None
    for stage in (Stage.ANALYSIS, Stage.ENHANCEMENT, Stage.EXPORT):
        [finished] = await pools[stage].drain()
        analysis_job = analysis_job or finished

    stale = analysis_job.model_copy(update={"status": JobStatus.FAILED, "error": "late crash"})
    await orchestrator.handle_stage_failed(stale)
    assert await orchestrator.fail_run(run_id, "cancelled") is False

    run = await orchestrator.get_run_status(run_id)
    assert run.current_stage == Stage.COMPLETE.value
    assert run.overall_status == "completed"
    assert run.error is None
    assert publisher.of_type(EventType.ENHANCEMENT_FAILED) == []
