from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventType(StrEnum):
    ENHANCEMENT_STARTED = "enhancement.started"
    ENHANCEMENT_PROGRESS = "enhancement.progress"
    ENHANCEMENT_COMPLETED = "enhancement.completed"
    ENHANCEMENT_FAILED = "enhancement.failed"
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_ANALYZED = "document.analyzed"
    EXPORT_COMPLETED = "export.completed"


ALL_EVENT_TYPES: frozenset[str] = frozenset(item.value for item in EventType)


class _EventData(BaseModel):
    # Closed payload shapes; unknown keys are rejected at the fan-out boundary.
    model_config = ConfigDict(extra="forbid")


class EnhancementStartedData(_EventData):
    event: Literal["enhancement.started"] = "enhancement.started"
    run_id: str
    document_id: str
    status: Literal["processing"] = "processing"
    progress: int = 0


class EnhancementProgressData(_EventData):
    event: Literal["enhancement.progress"] = "enhancement.progress"
    run_id: str
    document_id: str
    stage: str
    progress: int = Field(ge=0, le=100)
    status: Literal["processing"] = "processing"


class EnhancementCompletedData(_EventData):
    event: Literal["enhancement.completed"] = "enhancement.completed"
    run_id: str
    document_id: str
    status: Literal["completed"] = "completed"
    progress: int = 100
    output: dict[str, Any] = Field(default_factory=dict)


class EnhancementFailedData(_EventData):
    event: Literal["enhancement.failed"] = "enhancement.failed"
    run_id: str
    document_id: str
    stage: str
    status: Literal["failed"] = "failed"
    error: str


class DocumentUploadedData(_EventData):
    event: Literal["document.uploaded"] = "document.uploaded"
    document_id: str
    filename: str | None = None
    content_type: str | None = None
    size_bytes: int | None = None


class DocumentAnalyzedData(_EventData):
    event: Literal["document.analyzed"] = "document.analyzed"
    run_id: str
    document_id: str
    analysis: dict[str, Any] = Field(default_factory=dict)


class ExportCompletedData(_EventData):
    event: Literal["export.completed"] = "export.completed"
    run_id: str
    document_id: str
    export: dict[str, Any] = Field(default_factory=dict)


EventData = Annotated[
    Union[
        EnhancementStartedData,
        EnhancementProgressData,
        EnhancementCompletedData,
        EnhancementFailedData,
        DocumentUploadedData,
        DocumentAnalyzedData,
        ExportCompletedData,
    ],
    Field(discriminator="event"),
]

_event_data_adapter: TypeAdapter[EventData] = TypeAdapter(EventData)


def parse_event_data(event_type: str, data: dict[str, Any]) -> EventData:
    # Validate a raw payload against the closed shape registered for its event type.
    return _event_data_adapter.validate_python({**data, "event": event_type})


class DomainEvent(BaseModel):
    """One pipeline occurrence addressed to the owner's webhook subscribers."""

    owner_id: str
    data: EventData
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_type(self) -> EventType:
        return EventType(self.data.event)

    def wire_payload(self) -> dict[str, Any]:
        # Delivery body {event, timestamp, data}; the discriminator stays out of data.
        return {
            "event": self.event_type.value,
            "timestamp": self.occurred_at.isoformat().replace("+00:00", "Z"),
            "data": self.data.model_dump(mode="json", exclude={"event"}),
        }
