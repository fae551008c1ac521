"""Pipeline run, stage state and log models."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StageId(StrEnum):
    """Stable identifiers of the pipeline stages."""

    TRANSCRIPTION = "transcription"
    DIARIZATION = "diarization"
    SUMMARIZATION = "summarization"
    ASSET_GENERATION = "asset_generation"
    ASSEMBLY = "assembly"


# Execution order is fixed; stages never reorder or run concurrently.
STAGE_ORDER: tuple[StageId, ...] = (
    StageId.TRANSCRIPTION,
    StageId.DIARIZATION,
    StageId.SUMMARIZATION,
    StageId.ASSET_GENERATION,
    StageId.ASSEMBLY,
)

STAGE_LABELS: dict[StageId, str] = {
    StageId.TRANSCRIPTION: "Transcription",
    StageId.DIARIZATION: "Speaker Diarization",
    StageId.SUMMARIZATION: "Summarization",
    StageId.ASSET_GENERATION: "Asset Generation",
    StageId.ASSEMBLY: "Final Assembly",
}


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStatus(StrEnum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(StrEnum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    DEBUG = "DEBUG"


class LogEntry(BaseModel):
    """One immutable line of the run log."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: LogLevel = LogLevel.INFO
    message: str


class StageState(BaseModel):
    """Mutable per-stage record owned by the orchestrator."""

    stage: StageId
    status: StageStatus = Field(default=StageStatus.PENDING)
    progress: float = Field(default=0.0, ge=0, le=100)
    detail: str | None = None

    @property
    def label(self) -> str:
        return STAGE_LABELS[self.stage]


def initial_stages() -> list[StageState]:
    return [StageState(stage=stage) for stage in STAGE_ORDER]


class PipelineRun(BaseModel):
    """Aggregate state of one pipeline run: stages, overall status and log."""

    run_id: str | None = None
    status: PipelineStatus = Field(default=PipelineStatus.IDLE)
    stages: list[StageState] = Field(default_factory=initial_stages)
    log: list[LogEntry] = Field(default_factory=list)
    media_input: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    output: Any = None

    def stage(self, stage_id: StageId) -> StageState:
        """Return the state record of one stage."""
        return self.stages[STAGE_ORDER.index(stage_id)]

    @property
    def current_stage(self) -> StageState | None:
        """The stage currently running, if any."""
        for state in self.stages:
            if state.status == StageStatus.RUNNING:
                return state
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)

    def is_initial(self) -> bool:
        """True when stages and status equal a freshly created Idle run."""
        return (
            self.status == PipelineStatus.IDLE
            and self.run_id is None
            and all(
                s.status == StageStatus.PENDING and s.progress == 0 and s.detail is None
                for s in self.stages
            )
        )

    def consistency_errors(self) -> list[str]:
        """List every violated ordering invariant; empty when the run is consistent.

        Stages must read as a prefix of Completed, then at most one Running or
        Failed stage, then Pending. Running progress stays below 100.
        """
        errors: list[str] = []
        statuses = [s.status for s in self.stages]
        if [s.stage for s in self.stages] != list(STAGE_ORDER):
            errors.append("stages are not in declared order")

        i = 0
        while i < len(statuses) and statuses[i] == StageStatus.COMPLETED:
            i += 1
        if i < len(statuses) and statuses[i] in (StageStatus.RUNNING, StageStatus.FAILED):
            i += 1
        if any(s != StageStatus.PENDING for s in statuses[i:]):
            errors.append(f"stage statuses out of order: {[str(s) for s in statuses]}")

        running = statuses.count(StageStatus.RUNNING)
        failed = statuses.count(StageStatus.FAILED)
        if running > 1:
            errors.append("more than one stage is running")
        if running and self.status != PipelineStatus.PROCESSING:
            errors.append(f"stage running while pipeline is {self.status}")
        if failed and self.status != PipelineStatus.FAILED:
            errors.append(f"stage failed while pipeline is {self.status}")
        if self.status == PipelineStatus.COMPLETED and any(
            s != StageStatus.COMPLETED for s in statuses
        ):
            errors.append("pipeline completed with unfinished stages")
        if self.status == PipelineStatus.IDLE and any(s != StageStatus.PENDING for s in statuses):
            errors.append("idle pipeline has started stages")

        for state in self.stages:
            if state.status == StageStatus.RUNNING and state.progress >= 100:
                errors.append(f"{state.stage} reports 100 while running")
            if state.status == StageStatus.COMPLETED and state.progress != 100:
                errors.append(f"{state.stage} completed below 100")
            if state.status == StageStatus.PENDING and state.progress != 0:
                errors.append(f"{state.stage} pending with progress")
        return errors
