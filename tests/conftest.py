"""Shared test fixtures and scripted stage tools."""

import asyncio
import tempfile
import threading
from pathlib import Path

import pytest

from cinesum.models.errors import StageCancelled
from cinesum.models.options import PipelineOptions
from cinesum.models.pipeline import STAGE_ORDER, StageId
from cinesum.pipeline.contract import StageResult


class ScriptedTool:
    """Deterministic stage tool: reports the given progress values, then finishes."""

    def __init__(
        self,
        steps=(25.0, 50.0, 75.0),
        payload=None,
        error: str | None = None,
        raises: BaseException | None = None,
        delay: float = 0.0,
    ):
        self.steps = list(steps)
        self.payload = payload
        self.error = error
        self.raises = raises
        self.delay = delay
        self.calls = 0
        self.contexts = []

    async def __call__(self, context, progress):
        self.calls += 1
        self.contexts.append(context)
        for pct in self.steps:
            await asyncio.sleep(self.delay)
            progress(pct)
        if self.raises is not None:
            raise self.raises
        if self.error is not None:
            return StageResult.failed(self.error)
        payload = self.payload if self.payload is not None else f"{context.stage.value}-output"
        return StageResult.succeeded(payload)


class BlockingTool:
    """Reports 10%, then waits for ``release`` before reporting again."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled_seen = False
        self.calls = 0

    async def __call__(self, context, progress):
        self.calls += 1
        progress(10.0, "warming up")
        self.started.set()
        await self.release.wait()
        try:
            progress(50.0)
        except StageCancelled:
            self.cancelled_seen = True
            raise
        return StageResult.succeeded("released")


class HangingTool:
    """Never finishes on its own; records when the orchestrator stops it."""

    def __init__(self):
        self.started = asyncio.Event()
        self.stopped = False

    async def __call__(self, context, progress):
        self.started.set()
        try:
            await asyncio.Event().wait()
        finally:
            self.stopped = True


class SlowTool:
    """Ticks progress until ``done`` (a threading.Event) is set or ticks run out."""

    def __init__(self, ticks: int = 1000, interval: float = 0.01):
        self.ticks = ticks
        self.interval = interval
        self.done = threading.Event()

    async def __call__(self, context, progress):
        for i in range(self.ticks):
            if self.done.is_set():
                break
            progress(min(95.0, i * 0.1))
            await asyncio.sleep(self.interval)
        return StageResult.succeeded("slow-output")


def make_tools(overrides: dict | None = None) -> dict:
    """One ScriptedTool per stage, with per-stage overrides."""
    tools = {stage: ScriptedTool() for stage in STAGE_ORDER}
    tools.update(overrides or {})
    return tools


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def options():
    return PipelineOptions(summarization_model="llama3", transcription_model="tiny")


@pytest.fixture
def tools():
    return make_tools()


@pytest.fixture
def stage_ids():
    return list(StageId)
