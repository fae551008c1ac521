"""State transitions for a pipeline run.

Every mutation of the run goes through ``RunStateMachine``. Each transition
checks that it is allowed, updates the aggregate in one step and returns the
events describing the change, so observers never see a partially updated run.
Log entries produced by a transition are appended inside the same step.
"""

import logging
import math
from datetime import UTC, datetime
from typing import Any

from cinesum.models.errors import InvalidStateError
from cinesum.models.events import (
    BaseEvent,
    LogAppended,
    LogCleared,
    PipelineStatusChanged,
    ProgressChanged,
    StageStatusChanged,
)
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

logger = logging.getLogger(__name__)

# Highest progress a running stage may report; 100 is reserved for completion.
MAX_RUNNING_PROGRESS = 99.0

_LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def clamp_progress(percent: float) -> float:
    """Clamp a reported percentage into the running range [0, 99]."""
    return min(MAX_RUNNING_PROGRESS, max(0.0, float(percent)))


class RunStateMachine:
    """Owns the ``PipelineRun`` aggregate and applies transitions to it."""

    def __init__(self, run: PipelineRun | None = None):
        self.run = run or PipelineRun()
        self._sequence = 0

    def snapshot(self) -> PipelineRun:
        """Deep copy of the run, safe to hand to observers."""
        return self.run.model_copy(deep=True)

    # --- pipeline-level transitions ---

    def start(self, media_input: str, run_id: str) -> list[BaseEvent]:
        if self.run.status != PipelineStatus.IDLE:
            raise InvalidStateError(
                f"Cannot start: pipeline is {self.run.status}",
                details={"status": str(self.run.status)},
            )
        now = self._now()
        self.run.run_id = run_id
        self.run.media_input = media_input
        self.run.started_at = now
        self.run.updated_at = now
        events = self._set_status(PipelineStatus.PROCESSING)
        events += self.append_log(f"Starting pipeline for {media_input}")
        return events

    def complete(self, output: Any = None) -> list[BaseEvent]:
        self._require_processing("complete")
        unfinished = [s.stage for s in self.run.stages if s.status != StageStatus.COMPLETED]
        if unfinished:
            raise InvalidStateError(
                "Cannot complete pipeline with unfinished stages",
                details={"unfinished": [str(s) for s in unfinished]},
            )
        self.run.output = output
        self.run.completed_at = self._now()
        events = self._set_status(PipelineStatus.COMPLETED)
        events += self.append_log("Pipeline finished successfully. Output saved.")
        return events

    def reset(self) -> list[BaseEvent]:
        """Replace the run with a fresh Idle one, keeping only the log."""
        previous = self.run
        self.run = PipelineRun(log=previous.log)
        events: list[BaseEvent] = []
        for old in previous.stages:
            if old.status != StageStatus.PENDING or old.progress != 0 or old.detail is not None:
                events.append(self._stage_event(self.run.stage(old.stage)))
        if previous.status != PipelineStatus.IDLE:
            events.append(
                PipelineStatusChanged(
                    run_id=None,
                    sequence=self._next_sequence(),
                    timestamp=self._now(),
                    status=PipelineStatus.IDLE,
                    previous=previous.status,
                )
            )
        logger.info("Pipeline reset (previous run %s, %s)", previous.run_id, previous.status)
        return events

    # --- stage-level transitions ---

    def begin_stage(self, stage: StageId) -> list[BaseEvent]:
        self._require_processing("begin stage")
        state = self.run.stage(stage)
        index = STAGE_ORDER.index(stage)
        if state.status != StageStatus.PENDING:
            raise InvalidStateError(f"Stage {stage} already {state.status}")
        if any(s.status != StageStatus.COMPLETED for s in self.run.stages[:index]):
            raise InvalidStateError(f"Stage {stage} cannot start before earlier stages complete")
        state.status = StageStatus.RUNNING
        state.progress = 0.0
        state.detail = "Initializing..."
        self._touch()
        events = [self._stage_event(state)]
        events += self.append_log(f"{STAGE_LABELS[stage]} started")
        return events

    def update_progress(
        self, stage: StageId, percent: float, detail: str | None = None
    ) -> list[BaseEvent]:
        """Record a progress report; progress is clamped and never moves backwards."""
        state = self._require_running(stage)
        if not math.isnan(percent):
            state.progress = max(state.progress, clamp_progress(percent))
        state.detail = detail or "Processing..."
        self._touch()
        return [
            ProgressChanged(
                run_id=self.run.run_id,
                sequence=self._next_sequence(),
                timestamp=self._now(),
                stage=stage,
                progress=state.progress,
                detail=state.detail,
            )
        ]

    def complete_stage(self, stage: StageId) -> list[BaseEvent]:
        state = self._require_running(stage)
        state.status = StageStatus.COMPLETED
        state.progress = 100.0
        state.detail = "Done"
        self._touch()
        events = [self._stage_event(state)]
        events += self.append_log(f"{STAGE_LABELS[stage]} completed")
        return events

    def fail_stage(self, stage: StageId, reason: str, cancelled: bool = False) -> list[BaseEvent]:
        """Mark ``stage`` Failed and halt the pipeline; later stages stay Pending."""
        self._require_processing("fail stage")
        state = self.run.stage(stage)
        if state.status not in (StageStatus.RUNNING, StageStatus.PENDING):
            raise InvalidStateError(f"Stage {stage} is already {state.status}")
        index = STAGE_ORDER.index(stage)
        if any(s.status != StageStatus.COMPLETED for s in self.run.stages[:index]):
            raise InvalidStateError(f"Stage {stage} is not the active stage")
        state.status = StageStatus.FAILED
        state.detail = reason
        self._touch()
        self.run.error = reason
        self.run.completed_at = self._now()

        label = STAGE_LABELS[stage]
        message = f"{label} cancelled" if cancelled else f"{label} failed: {reason}"
        events = [self._stage_event(state)]
        events += self.append_log(message, LogLevel.ERROR)
        events += self._set_status(PipelineStatus.FAILED)
        events += self.append_log("Pipeline failed.", LogLevel.ERROR)
        return events

    # --- log ---

    def append_log(self, message: str, level: LogLevel = LogLevel.INFO) -> list[BaseEvent]:
        entry = LogEntry(timestamp=self._now(), level=level, message=message)
        self.run.log.append(entry)
        logger.log(_LOGGING_LEVELS[level], "[run %s] %s", self.run.run_id or "-", message)
        return [
            LogAppended(
                run_id=self.run.run_id,
                sequence=self._next_sequence(),
                timestamp=entry.timestamp,
                entry=entry,
            )
        ]

    def clear_log(self) -> list[BaseEvent]:
        self.run.log.clear()
        return [
            LogCleared(run_id=self.run.run_id, sequence=self._next_sequence(), timestamp=self._now())
        ]

    # --- helpers ---

    def _set_status(self, status: PipelineStatus) -> list[BaseEvent]:
        previous = self.run.status
        self.run.status = status
        self._touch()
        return [
            PipelineStatusChanged(
                run_id=self.run.run_id,
                sequence=self._next_sequence(),
                timestamp=self._now(),
                status=status,
                previous=previous,
                error=self.run.error,
            )
        ]

    def _stage_event(self, state: StageState) -> StageStatusChanged:
        return StageStatusChanged(
            run_id=self.run.run_id,
            sequence=self._next_sequence(),
            timestamp=self._now(),
            stage=state.stage,
            status=state.status,
            progress=state.progress,
            detail=state.detail,
        )

    def _require_processing(self, action: str) -> None:
        if self.run.status != PipelineStatus.PROCESSING:
            raise InvalidStateError(f"Cannot {action}: pipeline is {self.run.status}")

    def _require_running(self, stage: StageId) -> StageState:
        self._require_processing("update stage")
        state = self.run.stage(stage)
        if state.status != StageStatus.RUNNING:
            raise InvalidStateError(f"Stage {stage} is not running ({state.status})")
        return state

    def _touch(self) -> None:
        self.run.updated_at = self._now()

    def _next_sequence(self) -> int:
        sequence = self._sequence
        self._sequence += 1
        return sequence

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)
