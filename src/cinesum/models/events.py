"""Observer events emitted by the orchestrator."""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from cinesum.models.pipeline import LogEntry, PipelineStatus, StageId, StageStatus


class BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str | None = None
    sequence: int = Field(..., ge=0)
    timestamp: datetime


class StageStatusChanged(BaseEvent):
    kind: Literal["stage_status_changed"] = "stage_status_changed"
    stage: StageId
    status: StageStatus
    progress: float = Field(..., ge=0, le=100)
    detail: str | None = None


class ProgressChanged(BaseEvent):
    kind: Literal["progress_changed"] = "progress_changed"
    stage: StageId
    progress: float = Field(..., ge=0, lt=100)
    detail: str | None = None


class LogAppended(BaseEvent):
    kind: Literal["log_appended"] = "log_appended"
    entry: LogEntry


class LogCleared(BaseEvent):
    kind: Literal["log_cleared"] = "log_cleared"


class PipelineStatusChanged(BaseEvent):
    kind: Literal["pipeline_status_changed"] = "pipeline_status_changed"
    status: PipelineStatus
    previous: PipelineStatus
    error: str | None = None


PipelineEvent = Annotated[
    StageStatusChanged | ProgressChanged | LogAppended | LogCleared | PipelineStatusChanged,
    Field(discriminator="kind"),
]
