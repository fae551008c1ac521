"""The contract between the orchestrator and stage tools.

A stage tool is an async callable ``tool(context, progress)``. It reports
progress in [0, 100) through ``progress`` and returns a ``StageResult`` (any
other return value counts as a successful payload). Raising an exception is
a failure. Cancellation is cooperative: once requested, the next call to
``progress(...)`` or ``context.checkpoint()`` raises ``StageCancelled``.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from cinesum.models.errors import StageCancelled
from cinesum.models.options import PipelineOptions
from cinesum.models.pipeline import STAGE_LABELS, LogLevel, StageId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage tool invocation."""

    success: bool
    payload: Any = None
    error: str | None = None

    @classmethod
    def succeeded(cls, payload: Any = None) -> "StageResult":
        return cls(success=True, payload=payload)

    @classmethod
    def failed(cls, error: str) -> "StageResult":
        return cls(success=False, error=error or "stage reported failure")


class RunControl:
    """Cancellation flag shared by the orchestrator and the tools of one run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait(self) -> None:
        """Block until the run is cancelled."""
        await self._cancelled.wait()


@dataclass
class StageContext:
    """Everything a stage tool may read about the run it belongs to."""

    run_id: str
    stage: StageId
    media_input: str
    options: PipelineOptions
    previous: Any = None
    results: dict[StageId, Any] = field(default_factory=dict)
    control: RunControl | None = None
    log_sink: Callable[[str, LogLevel], None] | None = None

    @property
    def label(self) -> str:
        return STAGE_LABELS[self.stage]

    @property
    def cancelled(self) -> bool:
        return self.control is not None and self.control.cancelled

    def checkpoint(self) -> None:
        """Raise ``StageCancelled`` if the run was cancelled."""
        if self.cancelled:
            raise StageCancelled(stage=self.stage)

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        """Append a line to the run log."""
        if self.log_sink is not None:
            self.log_sink(message, level)
        else:
            logger.info("[%s] %s", self.stage, message)


class ProgressReporter:
    """Progress sink handed to a stage tool.

    Call it (or ``report``) with a percentage. Values are clamped by the
    orchestrator; each call is also a cancellation checkpoint.
    """

    def __init__(
        self,
        context: StageContext,
        on_progress: Callable[[float, str | None], None],
    ):
        self.context = context
        self._on_progress = on_progress

    def report(self, percent: float, detail: str | None = None) -> None:
        self.context.checkpoint()
        self._on_progress(percent, detail)

    def __call__(self, percent: float, detail: str | None = None) -> None:
        self.report(percent, detail)


StageTool = Callable[[StageContext, ProgressReporter], Awaitable[Any]]
