"""Pipeline orchestrator: runs the stage sequence and reports to observers."""

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from cinesum.config import Settings, get_settings
from cinesum.models.errors import (
    CineSumError,
    ConfigurationError,
    InvalidStateError,
    StageCancelled,
    StageTimeout,
)
from cinesum.models.events import BaseEvent
from cinesum.models.options import PipelineOptions
from cinesum.models.pipeline import (
    STAGE_ORDER,
    LogLevel,
    PipelineRun,
    PipelineStatus,
    StageId,
    StageStatus,
)
from cinesum.pipeline.contract import (
    ProgressReporter,
    RunControl,
    StageContext,
    StageResult,
    StageTool,
)
from cinesum.pipeline.events import EventBus, EventHandler
from cinesum.pipeline.state import RunStateMachine
from cinesum.tools.registry import build_tools

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Executes the fixed stage sequence, one run at a time.

    ``start`` returns as soon as the run is Processing; the stages execute in
    an asyncio task on the caller's loop. Progress, log lines and status
    changes are published on ``events``. A stage failure halts the run and
    leaves the remaining stages Pending. The orchestrator never retries.
    """

    def __init__(
        self,
        tools: Mapping[StageId, StageTool],
        options: PipelineOptions | None = None,
        stage_timeout: float | None = None,
        stage_timeouts: Mapping[StageId, float] | None = None,
        event_bus: EventBus | None = None,
    ):
        missing = [stage for stage in STAGE_ORDER if stage not in tools]
        if missing:
            raise ConfigurationError(
                f"No tool configured for stages: {', '.join(missing)}",
                details={"missing": [str(s) for s in missing]},
            )
        self.tools: dict[StageId, StageTool] = {stage: tools[stage] for stage in STAGE_ORDER}
        self.options = options or PipelineOptions()
        self.stage_timeout = stage_timeout
        self.stage_timeouts: dict[StageId, float] = dict(stage_timeouts or {})
        self.events = event_bus or EventBus()
        self._machine = RunStateMachine()
        self._control: RunControl | None = None
        self._task: asyncio.Task | None = None
        self._retired: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PipelineOrchestrator":
        """Build an orchestrator with the tools and options described by settings."""
        settings = settings or get_settings()
        return cls(
            tools=build_tools(settings),
            options=settings.pipeline_options(),
            stage_timeout=settings.stage_timeout_seconds,
        )

    # --- queries ---

    @property
    def status(self) -> PipelineStatus:
        return self._machine.run.status

    def snapshot(self) -> PipelineRun:
        """Immutable view (deep copy) of the current run."""
        return self._machine.snapshot()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        return self.events.subscribe(handler)

    # --- operations ---

    def start(self, media_input: str | None) -> PipelineRun:
        """Begin a run for ``media_input`` and return right after it is Processing.

        Raises ``InvalidStateError`` without touching the run when the input
        is missing or the pipeline is not Idle.
        """
        if media_input is None or not str(media_input).strip():
            raise InvalidStateError("No media input provided")
        status = self._machine.run.status
        if status != PipelineStatus.IDLE:
            hint = "" if status == PipelineStatus.PROCESSING else "; reset first"
            raise InvalidStateError(
                f"Cannot start while pipeline is {status}{hint}",
                details={"status": str(status)},
            )
        loop = asyncio.get_running_loop()

        run_id = uuid.uuid4().hex
        self._apply(self._machine.start(str(media_input), run_id))
        control = RunControl(run_id)
        self._control = control
        self._task = loop.create_task(self._execute(control), name=f"cinesum-run-{run_id}")
        return self.snapshot()

    def cancel(self) -> bool:
        """Request a stop. Returns False (no-op) unless a run is Processing."""
        control = self._control
        run = self._machine.run
        if control is None or run.status != PipelineStatus.PROCESSING:
            return False
        control.cancel()
        target = run.current_stage or next(s for s in run.stages if s.status == StageStatus.PENDING)
        self._apply(self._machine.fail_stage(target.stage, "cancelled", cancelled=True))
        return True

    def reset(self) -> PipelineRun:
        """Discard the current run (in any state) and return a fresh Idle one.

        A run still in flight is cancelled and its task stopped. The log is
        kept; use ``clear_log`` to truncate it.
        """
        if self._control is not None:
            self._control.cancel()
        self._retire(self._task)
        self._control = None
        self._task = None
        self._apply(self._machine.reset())
        return self.snapshot()

    def clear_log(self) -> None:
        self._apply(self._machine.clear_log())

    async def wait(self) -> PipelineRun:
        """Wait for the current run's task to finish and return the final snapshot.

        Tasks of runs discarded by ``reset`` are awaited too.
        """
        if self._retired:
            await asyncio.gather(*self._retired, return_exceptions=True)
        task = self._task
        if task is not None:
            await asyncio.shield(task)
        return self.snapshot()

    async def run(self, media_input: str) -> PipelineRun:
        self.start(media_input)
        return await self.wait()

    # --- execution ---

    async def _execute(self, control: RunControl) -> None:
        results: dict[StageId, Any] = {}
        previous: Any = None
        media_input = self._machine.run.media_input or ""

        for stage in STAGE_ORDER:
            if not self._is_active(control):
                return
            self._apply(self._machine.begin_stage(stage))
            context = StageContext(
                run_id=control.run_id,
                stage=stage,
                media_input=media_input,
                options=self.options,
                previous=previous,
                results=dict(results),
                control=control,
                log_sink=self._log_sink(control),
            )
            reporter = ProgressReporter(context, self._progress_sink(control, stage))

            try:
                result = await self._invoke(stage, context, reporter)
            except StageCancelled:
                if self._is_active(control):
                    self._fail(control, stage, "cancelled", cancelled=True)
                logger.info("Run %s stopped at %s", control.run_id, stage)
                return
            except asyncio.CancelledError:
                self._fail(control, stage, "cancelled", cancelled=True)
                raise
            except CineSumError as e:
                self._fail(control, stage, e.message)
                return
            except Exception as e:
                logger.exception("Tool for %s raised", stage)
                self._fail(control, stage, str(e) or type(e).__name__)
                return

            if not self._is_active(control):
                return
            if not isinstance(result, StageResult):
                result = StageResult.succeeded(result)
            if not result.success:
                self._fail(control, stage, result.error or "stage reported failure")
                return

            self._apply(self._machine.complete_stage(stage))
            results[stage] = result.payload
            previous = result.payload

        if self._is_active(control):
            self._apply(self._machine.complete(previous))

    async def _invoke(
        self, stage: StageId, context: StageContext, reporter: ProgressReporter
    ) -> Any:
        timeout = self.stage_timeouts.get(stage, self.stage_timeout)
        tool = self.tools[stage]
        if timeout is None:
            return await tool(context, reporter)
        try:
            async with asyncio.timeout(timeout) as deadline:
                return await tool(context, reporter)
        except TimeoutError:
            if deadline.expired():
                raise StageTimeout(timeout, stage=stage)
            raise

    def _is_active(self, control: RunControl) -> bool:
        return (
            self._control is control
            and not control.cancelled
            and self._machine.run.run_id == control.run_id
            and self._machine.run.status == PipelineStatus.PROCESSING
        )

    def _fail(self, control: RunControl, stage: StageId, reason: str, cancelled: bool = False):
        if self._is_active(control):
            self._apply(self._machine.fail_stage(stage, reason, cancelled=cancelled))

    def _progress_sink(self, control: RunControl, stage: StageId):
        def on_progress(percent: float, detail: str | None) -> None:
            if self._is_active(control):
                self._apply(self._machine.update_progress(stage, percent, detail))

        return on_progress

    def _log_sink(self, control: RunControl):
        def on_log(message: str, level: LogLevel) -> None:
            if self._is_active(control):
                self._apply(self._machine.append_log(message, level))
            else:
                logger.debug("Dropped log line from inactive run %s: %s", control.run_id, message)

        return on_log

    def _retire(self, task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        self._retired.add(task)
        task.add_done_callback(self._on_retired_done)

    def _on_retired_done(self, task: asyncio.Task) -> None:
        self._retired.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Discarded run task failed", exc_info=task.exception())

    def _apply(self, events: list[BaseEvent]) -> None:
        self.events.publish_all(events)
