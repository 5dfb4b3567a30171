from __future__ import annotations

from enum import IntEnum, StrEnum


class Stage(StrEnum):
    ANALYSIS = "analysis"
    ENHANCEMENT = "enhancement"
    EXPORT = "export"
    COMPLETE = "complete"
    FAILED = "failed"


class RunStatus(StrEnum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Tier(StrEnum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"


class Priority(IntEnum):
    # Lower value dequeues first.
    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


# Total order used for monotonic stage advancement; failed sits outside it.
STAGE_ORDER: tuple[Stage, ...] = (Stage.ANALYSIS, Stage.ENHANCEMENT, Stage.EXPORT, Stage.COMPLETE)
EXECUTABLE_STAGES: tuple[Stage, ...] = (Stage.ANALYSIS, Stage.ENHANCEMENT, Stage.EXPORT)
TERMINAL_STAGES = frozenset({Stage.COMPLETE, Stage.FAILED})

# Run-level progress reported once the pipeline has entered each stage.
STAGE_PROGRESS: dict[Stage, int] = {
    Stage.ANALYSIS: 0,
    Stage.ENHANCEMENT: 25,
    Stage.EXPORT: 75,
    Stage.COMPLETE: 100,
}

_TIER_PRIORITY: dict[Tier, Priority] = {
    Tier.PREMIUM: Priority.CRITICAL,
    Tier.PRO: Priority.HIGH,
    Tier.BASIC: Priority.NORMAL,
    Tier.FREE: Priority.LOW,
    Tier.ANONYMOUS: Priority.LOW,
}


def normalize_tier(value: str | None) -> Tier:
    # Unknown tiers fall back to the most conservative treatment.
    if not value:
        return Tier.ANONYMOUS
    try:
        return Tier(value.strip().lower())
    except ValueError:
        return Tier.FREE


def priority_for_tier(tier: str | Tier | None) -> int:
    return int(_TIER_PRIORITY[normalize_tier(tier)])


def next_stage(stage: Stage) -> Stage:
    if stage not in EXECUTABLE_STAGES:
        raise ValueError(f"stage {stage} has no successor")
    return STAGE_ORDER[STAGE_ORDER.index(stage) + 1]


def is_forward_transition(current: Stage, target: Stage) -> bool:
    # Terminal stages never transition again; failure is reachable from any live stage.
    if current in TERMINAL_STAGES:
        return False
    if target == Stage.FAILED:
        return True
    return STAGE_ORDER.index(target) > STAGE_ORDER.index(current)
