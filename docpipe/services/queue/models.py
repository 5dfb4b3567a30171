from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
import json
from typing import Any

from pydantic import BaseModel, Field, model_validator

from docpipe.domain.state import Priority


class JobStatus(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Priority bands are spaced wider than any per-queue sequence number so FIFO stays inside a band.
# Scores stay below 2**53 for every Priority, so Redis doubles keep them exact.
_PRIORITY_BAND = 10**15


def compute_backoff_ms(
    attempt: int,
    *,
    initial_delay_ms: int,
    multiplier: float,
    max_delay_ms: int,
) -> int:
    # delay = min(initial * multiplier^(attempt-1), max); attempt is 1-based.
    exponent = max(0, int(attempt) - 1)
    delay = float(initial_delay_ms) * (float(multiplier) ** exponent)
    return int(min(delay, float(max_delay_ms)))


class BackoffPolicy(BaseModel):
    initial_delay_ms: int = Field(default=1_000, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30_000, ge=0)

    @model_validator(mode="after")
    def _cap_covers_initial(self) -> "BackoffPolicy":
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self

    def delay_ms(self, attempt: int) -> int:
        return compute_backoff_ms(
            attempt,
            initial_delay_ms=self.initial_delay_ms,
            multiplier=self.multiplier,
            max_delay_ms=self.max_delay_ms,
        )


class Job(BaseModel):
    """Unit of work owned by the queue; other components refer to it by id."""

    id: str
    queue_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = int(Priority.NORMAL)
    # Per-queue enqueue sequence assigned by the backend; breaks ties between equal priorities.
    seq: int = 0
    # Incremented on every claim, so it equals the number of the attempt in progress.
    attempts: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    created_at_ms: int
    next_run_at_ms: int
    started_at_ms: int | None = None
    finished_at_ms: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created_at_ms / 1000.0, tz=timezone.utc)

    @property
    def next_run_at(self) -> datetime:
        return datetime.fromtimestamp(self.next_run_at_ms / 1000.0, tz=timezone.utc)

    @property
    def rank(self) -> int:
        return int(self.priority) * _PRIORITY_BAND + int(self.seq)

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def to_hash(self) -> dict[str, str]:
        # Redis hashes store flat strings; structured fields travel as JSON.
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "payload": json.dumps(self.payload, separators=(",", ":")),
            "priority": str(int(self.priority)),
            "seq": str(int(self.seq)),
            "attempts": str(int(self.attempts)),
            "max_attempts": str(int(self.max_attempts)),
            "backoff": self.backoff.model_dump_json(),
            "status": self.status.value,
            "progress": str(int(self.progress)),
            "created_at_ms": str(int(self.created_at_ms)),
            "next_run_at_ms": str(int(self.next_run_at_ms)),
            "started_at_ms": "" if self.started_at_ms is None else str(int(self.started_at_ms)),
            "finished_at_ms": "" if self.finished_at_ms is None else str(int(self.finished_at_ms)),
            "result": "" if self.result is None else json.dumps(self.result, separators=(",", ":")),
            "error": self.error or "",
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "Job":
        def _opt_int(raw: str | None) -> int | None:
            return int(raw) if raw not in (None, "") else None

        return cls(
            id=data["id"],
            queue_name=data["queue_name"],
            payload=json.loads(data.get("payload") or "{}"),
            priority=int(data.get("priority") or Priority.NORMAL),
            seq=int(data.get("seq") or 0),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 1),
            backoff=BackoffPolicy.model_validate_json(data["backoff"]) if data.get("backoff") else BackoffPolicy(),
            status=JobStatus(data.get("status") or JobStatus.WAITING.value),
            progress=int(data.get("progress") or 0),
            created_at_ms=int(data["created_at_ms"]),
            next_run_at_ms=int(data.get("next_run_at_ms") or data["created_at_ms"]),
            started_at_ms=_opt_int(data.get("started_at_ms")),
            finished_at_ms=_opt_int(data.get("finished_at_ms")),
            result=json.loads(data["result"]) if data.get("result") else None,
            error=data.get("error") or None,
        )


class ClaimResult(BaseModel):
    job: Job | None = None
    # empty, concurrency, or rate_limited when no job was handed out.
    reason: str | None = None
    retry_after_ms: int = 0


class QueueMetrics(BaseModel):
    queue_name: str
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def failure_rate(self) -> float:
        finished = self.completed + self.failed
        return round(self.failed / finished, 4) if finished else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {**self.model_dump(), "failure_rate": self.failure_rate}


class StalledSweep(BaseModel):
    # Jobs found holding an expired lease, split by whether they had attempts left.
    requeued: list[str] = Field(default_factory=list)
    failed: list[Job] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)
