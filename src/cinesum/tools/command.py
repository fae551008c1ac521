"""Stage tool that runs an external program (ffmpeg, whisper, ...)."""

import asyncio
import json
import logging
import os
import shlex
from collections import deque
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from cinesum.models.errors import ConfigurationError, StageCancelled, StageToolError
from cinesum.models.pipeline import LogLevel
from cinesum.pipeline.contract import ProgressReporter, StageContext, StageResult
from cinesum.tools.base import BaseStageTool
from cinesum.tools.progress import PercentProgressMonitor, TimecodeProgressMonitor

logger = logging.getLogger(__name__)


class CommandOutput(BaseModel):
    """Payload produced by a successful command."""

    command: list[str]
    returncode: int = 0
    stdout: str = ""
    output_dir: str | None = None
    data: Any = Field(default=None, description="stdout parsed as JSON, when it is JSON")


class CommandTool(BaseStageTool):
    """Runs a command template as a subprocess and streams its progress.

    Template placeholders: ``{input}``, ``{run_id}``, ``{stage}``,
    ``{output_dir}``, ``{previous}`` (the previous stage's stdout or payload)
    and every non-secret option field (e.g. ``{transcription_model}``).
    Progress is parsed from stderr: ``time=`` timecodes when ``duration`` is
    given, ``NN%`` otherwise.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        name: str | None = None,
        duration: float | None = None,
        output_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
        stderr_tail: int = 30,
    ):
        self.template = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.template:
            raise ConfigurationError("Command template is empty")
        self.name = name or Path(self.template[0]).name
        self.duration = duration
        self.output_dir = output_dir
        self.env = dict(env) if env else None
        self.stderr_tail = stderr_tail

    def build_command(self, context: StageContext) -> list[str]:
        """Format the command template for one stage invocation."""
        values = {
            "input": context.media_input,
            "run_id": context.run_id,
            "stage": context.stage.value,
            "output_dir": str(self._run_dir(context) or ""),
            "previous": _previous_text(context.previous),
            **context.options.template_values(),
        }
        try:
            return [part.format(**values) for part in self.template]
        except (KeyError, IndexError) as e:
            raise ConfigurationError(
                f"Unknown placeholder {e} in {context.stage} command",
                details={"template": self.template},
            )

    async def run(self, context: StageContext, progress: ProgressReporter) -> StageResult:
        cmd = self.build_command(context)
        run_dir = self._run_dir(context)
        if run_dir is not None:
            run_dir.mkdir(parents=True, exist_ok=True)

        if self.duration:
            monitor = TimecodeProgressMonitor(self.duration, progress.report)
        else:
            monitor = PercentProgressMonitor(progress.report)

        context.log(f"Running {self.name}", LogLevel.DEBUG)
        logger.info("Running %s command: %s", context.stage, shlex.join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env} if self.env else None,
            )
        except FileNotFoundError:
            raise StageToolError(
                f"{cmd[0]} not found. Please install it or fix the {context.stage} command.",
                component=self.name,
                details={"command": cmd[0]},
            )

        stderr_lines: deque[str] = deque(maxlen=self.stderr_tail)
        stdout_task = asyncio.create_task(process.stdout.read())
        follow_task = asyncio.create_task(self._follow(process, monitor, stderr_lines, context))
        watchers = {follow_task}
        if context.control is not None:
            # A child that writes nothing to stderr never reaches a checkpoint.
            watchers.add(asyncio.create_task(context.control.wait()))
        try:
            await asyncio.wait(watchers, return_when=asyncio.FIRST_COMPLETED)
            if not follow_task.done():
                raise StageCancelled(stage=context.stage)
            returncode = follow_task.result()
            stdout = (await stdout_task).decode(errors="replace").strip()
        finally:
            for task in watchers:
                task.cancel()
            if process.returncode is None:
                await self._terminate(process)
            if not stdout_task.done():
                stdout_task.cancel()

        if returncode != 0:
            last = stderr_lines[-1] if stderr_lines else ""
            logger.error("%s failed (code %d)", self.name, returncode)
            raise StageToolError(
                f"{self.name} exited with code {returncode}" + (f": {last}" if last else ""),
                component=self.name,
                details={"stderr": "\n".join(stderr_lines), "command": cmd},
            )

        return StageResult.succeeded(
            CommandOutput(
                command=cmd,
                returncode=returncode,
                stdout=stdout,
                output_dir=str(run_dir) if run_dir else None,
                data=_parse_json(stdout),
            )
        )

    async def _follow(
        self,
        process: asyncio.subprocess.Process,
        monitor: TimecodeProgressMonitor | PercentProgressMonitor,
        stderr_lines: deque[str],
        context: StageContext,
    ) -> int:
        """Feed stderr to the progress monitor until the child exits."""
        async for raw in process.stderr:
            line = raw.decode(errors="replace").rstrip()
            stderr_lines.append(line)
            monitor.parse_line(line)
            context.checkpoint()
        return await process.wait()

    def _run_dir(self, context: StageContext) -> Path | None:
        if self.output_dir is None:
            return None
        return self.output_dir / context.run_id

    async def _terminate(self, process: asyncio.subprocess.Process, grace: float = 5.0) -> None:
        """Stop a child process that is still running, escalating to kill."""
        logger.warning("Stopping %s (pid %s)", self.name, process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), grace)
        except TimeoutError:
            process.kill()
            await process.wait()


def _previous_text(previous: Any) -> str:
    if previous is None:
        return ""
    if isinstance(previous, CommandOutput):
        return previous.stdout
    return str(previous)


def _parse_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None
