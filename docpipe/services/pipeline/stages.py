from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from docpipe.domain.state import EXECUTABLE_STAGES, Stage


@dataclass(frozen=True)
class StageInput:
    run_id: str
    document_id: str
    user_id: str
    tier: str
    stage: Stage
    # Outputs of earlier stages keyed by stage name.
    previous_outputs: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


@dataclass(frozen=True)
class StageResult:
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> "StageResult":
        return cls(success=True, output=output or {})

    @classmethod
    def failed(cls, error: str) -> "StageResult":
        return cls(success=False, error=error)


class StageExecutor(Protocol):
    async def __call__(self, stage_input: StageInput) -> StageResult:
        ...


class FakeStageExecutor:
    def __init__(self, stage: Stage, output: dict[str, Any] | None = None) -> None:
        # Deterministic output keeps local runs and tests free of external calls.
        self._stage = stage
        self._output = output

    async def __call__(self, stage_input: StageInput) -> StageResult:
        if self._output is not None:
            return StageResult.ok(dict(self._output))
        return StageResult.ok(
            {
                "stage": self._stage.value,
                "location": f"memory://{stage_input.document_id}/{stage_input.run_id}/{self._stage.value}",
            }
        )


def build_stage_executors(
    overrides: Mapping[Stage, StageExecutor] | None = None,
) -> dict[Stage, StageExecutor]:
    # Real analysis/enhancement/export executors are injected by the embedding service.
    executors: dict[Stage, StageExecutor] = {stage: FakeStageExecutor(stage) for stage in EXECUTABLE_STAGES}
    for stage, executor in (overrides or {}).items():
        if stage not in EXECUTABLE_STAGES:
            raise ValueError(f"stage {stage} does not run an executor")
        executors[stage] = executor
    return executors
