"""Data models for CineSum."""

from cinesum.models.errors import (
    CineSumError,
    ConfigurationError,
    ErrorResponse,
    InvalidStateError,
    StageCancelled,
    StageFailure,
    StageTimeout,
    StageToolError,
)
from cinesum.models.events import (
    LogAppended,
    LogCleared,
    PipelineEvent,
    PipelineStatusChanged,
    ProgressChanged,
    StageStatusChanged,
)
from cinesum.models.options import PipelineOptions
from cinesum.models.pipeline import (
    STAGE_LABELS,
    STAGE_ORDER,
    LogEntry,
    LogLevel,
    PipelineRun,
    PipelineStatus,
    StageId,
    StageState,
    StageStatus,
)

__all__ = [
    "STAGE_LABELS",
    "STAGE_ORDER",
    "CineSumError",
    "ConfigurationError",
    "ErrorResponse",
    "InvalidStateError",
    "LogAppended",
    "LogCleared",
    "LogEntry",
    "LogLevel",
    "PipelineEvent",
    "PipelineOptions",
    "PipelineRun",
    "PipelineStatus",
    "PipelineStatusChanged",
    "ProgressChanged",
    "StageCancelled",
    "StageFailure",
    "StageId",
    "StageState",
    "StageStatus",
    "StageStatusChanged",
    "StageTimeout",
    "StageToolError",
]
