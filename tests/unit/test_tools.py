"""Tests for stage tool adapters."""

import asyncio
import json
import sys

import httpx
import pytest

from cinesum.config import Settings
from cinesum.models.errors import ConfigurationError, StageCancelled, StageToolError
from cinesum.models.options import PipelineOptions
from cinesum.models.pipeline import STAGE_ORDER, LogLevel, StageId
from cinesum.pipeline.contract import ProgressReporter, RunControl, StageContext, StageResult
from cinesum.tools.cloud import CloudJobTool
from cinesum.tools.command import CommandOutput, CommandTool
from cinesum.tools.progress import PercentProgressMonitor, TimecodeProgressMonitor
from cinesum.tools.registry import build_tools
from cinesum.tools.retry import RetryingTool, is_retriable

PYTHON = [sys.executable, "-u", "-c"]

SUCCESS_SCRIPT = """
import json, sys
for pct in (10, 55, 90):
    sys.stderr.write(str(pct) + '%|####| chunk\\n')
print(json.dumps(dict(input=sys.argv[1], model=sys.argv[2])))
"""

FAILING_SCRIPT = """
import sys
sys.stderr.write('Invalid data found when processing input\\n')
sys.exit(3)
"""

ENDLESS_SCRIPT = """
import sys, time
for i in range(3000):
    sys.stderr.write(str(i % 90) + '%\\n')
    time.sleep(0.01)
"""

QUIET_SCRIPT = """
import time
time.sleep(30)
print("done")
"""


class Harness:
    """A stage context plus recorded progress and log lines."""

    def __init__(self, stage=StageId.TRANSCRIPTION, options=None, previous=None):
        self.control = RunControl("run-1")
        self.logs = []
        self.reports = []
        self.context = StageContext(
            run_id="run-1",
            stage=stage,
            media_input="talk.mp4",
            options=options or PipelineOptions(transcription_model="tiny"),
            previous=previous,
            control=self.control,
            log_sink=lambda message, level: self.logs.append((level, message)),
        )
        self.progress = ProgressReporter(self.context, self._on_progress)

    def _on_progress(self, percent, detail):
        self.reports.append(percent)


# --- Progress monitors ---


class TestTimecodeProgressMonitor:
    def test_parse_time(self):
        reported = []
        monitor = TimecodeProgressMonitor(10.0, reported.append)
        result = monitor.parse_line("frame=  100 fps=25 q=28.0 size=512kB time=00:00:05.00 bitrate=838.9kbits/s")
        assert result == pytest.approx(50.0)
        assert reported == [pytest.approx(50.0)]

    def test_hours_and_cap(self):
        monitor = TimecodeProgressMonitor(3600.0)
        assert monitor.parse_line("time=01:30:00.00") == 100.0

    def test_unrelated_line(self):
        monitor = TimecodeProgressMonitor(10.0)
        assert monitor.parse_line("Stream #0:0: Video: h264") is None
        assert monitor.progress == 0.0

    def test_zero_duration(self):
        monitor = TimecodeProgressMonitor(0.0)
        monitor.parse_line("time=00:00:05.00")
        assert monitor.progress == 0.0


class TestPercentProgressMonitor:
    def test_tqdm_line(self):
        reported = []
        monitor = PercentProgressMonitor(reported.append)
        assert monitor.parse_line(" 42%|████▏     | 42/100 [00:03<00:04]") == 42.0
        assert reported == [42.0]

    def test_last_percentage_wins(self):
        monitor = PercentProgressMonitor()
        assert monitor.parse_line("chunk 3: 10% ... 20.5%") == 20.5

    def test_ignores_out_of_range(self):
        monitor = PercentProgressMonitor()
        assert monitor.parse_line("gain 250%") is None
        assert monitor.parse_line("no numbers here") is None
        assert monitor.progress == 0.0


# --- CommandTool ---


class TestCommandTool:
    def test_build_command(self, tmp_dir):
        tool = CommandTool(
            "whisper {input} --model {transcription_model} --out {output_dir}",
            output_dir=tmp_dir,
        )
        cmd = tool.build_command(Harness().context)
        assert cmd == ["whisper", "talk.mp4", "--model", "tiny", "--out", str(tmp_dir / "run-1")]
        assert tool.name == "whisper"

    def test_previous_stdout_placeholder(self):
        previous = CommandOutput(command=["whisper"], stdout="hello world")
        tool = CommandTool(["summarize", "--text", "{previous}", "--model", "{summarization_model}"])
        cmd = tool.build_command(Harness(previous=previous).context)
        assert cmd == ["summarize", "--text", "hello world", "--model", "llama3"]

    def test_unknown_placeholder(self):
        tool = CommandTool("whisper {nope}")
        with pytest.raises(ConfigurationError):
            tool.build_command(Harness().context)

    def test_api_key_not_a_placeholder(self):
        tool = CommandTool("render {api_key}")
        with pytest.raises(ConfigurationError):
            tool.build_command(Harness().context)

    def test_empty_command(self):
        with pytest.raises(ConfigurationError):
            CommandTool("")

    @pytest.mark.asyncio
    async def test_success(self, tmp_dir):
        harness = Harness()
        tool = CommandTool(
            [*PYTHON, SUCCESS_SCRIPT, "{input}", "{transcription_model}"],
            name="fake-whisper",
            output_dir=tmp_dir,
        )
        result = await tool(harness.context, harness.progress)

        assert isinstance(result, StageResult)
        assert result.success
        assert result.payload.data == {"input": "talk.mp4", "model": "tiny"}
        assert json.loads(result.payload.stdout)["model"] == "tiny"
        assert result.payload.output_dir == str(tmp_dir / "run-1")
        assert (tmp_dir / "run-1").is_dir()
        assert harness.reports == [10.0, 55.0, 90.0]
        assert (LogLevel.DEBUG, "Running fake-whisper") in harness.logs

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        harness = Harness()
        tool = CommandTool([*PYTHON, FAILING_SCRIPT], name="ffmpeg")
        with pytest.raises(StageToolError) as exc_info:
            await tool(harness.context, harness.progress)
        assert exc_info.value.message == (
            "ffmpeg exited with code 3: Invalid data found when processing input"
        )
        assert not exc_info.value.retriable

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        harness = Harness()
        tool = CommandTool(["cinesum-no-such-binary", "{input}"])
        with pytest.raises(StageToolError) as exc_info:
            await tool(harness.context, harness.progress)
        assert "not found" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_cancellation_stops_process(self):
        harness = Harness()

        def cancel_on_first_report(percent, detail):
            harness.reports.append(percent)
            harness.control.cancel()

        progress = ProgressReporter(harness.context, cancel_on_first_report)
        tool = CommandTool([*PYTHON, ENDLESS_SCRIPT], name="endless")
        with pytest.raises(StageCancelled):
            await tool(harness.context, progress)
        assert len(harness.reports) == 1

    @pytest.mark.asyncio
    async def test_cancellation_stops_quiet_process(self):
        harness = Harness()
        tool = CommandTool([*PYTHON, QUIET_SCRIPT], name="quiet")
        loop = asyncio.get_running_loop()
        loop.call_later(0.2, harness.control.cancel)

        started = loop.time()
        with pytest.raises(StageCancelled):
            await asyncio.wait_for(tool(harness.context, harness.progress), 5.0)
        assert loop.time() - started < 3.0
        assert harness.reports == []


# --- RetryingTool ---


class FlakyTool:
    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, context, progress):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return StageResult.succeeded("ok")


class TestRetryingTool:
    def test_is_retriable(self):
        assert is_retriable(StageToolError("503", retriable=True))
        assert not is_retriable(StageToolError("400"))
        assert not is_retriable(StageCancelled())
        assert is_retriable(httpx.ConnectError("refused"))
        assert is_retriable(ConnectionError())
        assert not is_retriable(ValueError())

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryingTool(FlakyTool(0, None), attempts=0)

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        harness = Harness(stage=StageId.ASSET_GENERATION)
        inner = FlakyTool(2, StageToolError("HTTP 503", retriable=True))
        tool = RetryingTool(inner, attempts=3, min_wait=0, max_wait=0)

        result = await tool(harness.context, harness.progress)

        assert result.payload == "ok"
        assert inner.calls == 3
        warnings = [m for level, m in harness.logs if level == LogLevel.WARN]
        assert warnings == [
            "Retrying Asset Generation (attempt 2/3)",
            "Retrying Asset Generation (attempt 3/3)",
        ]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        harness = Harness()
        inner = FlakyTool(5, StageToolError("HTTP 502", retriable=True))
        tool = RetryingTool(inner, attempts=2, min_wait=0, max_wait=0)
        with pytest.raises(StageToolError):
            await tool(harness.context, harness.progress)
        assert inner.calls == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        harness = Harness()
        inner = FlakyTool(1, StageToolError("HTTP 401"))
        tool = RetryingTool(inner, attempts=3, min_wait=0, max_wait=0)
        with pytest.raises(StageToolError):
            await tool(harness.context, harness.progress)
        assert inner.calls == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_retrying(self):
        harness = Harness()
        inner = FlakyTool(5, StageToolError("HTTP 503", retriable=True))
        call_inner = inner.__call__

        async def cancel_after_first(context, progress):
            try:
                return await call_inner(context, progress)
            finally:
                harness.control.cancel()

        tool = RetryingTool(cancel_after_first, attempts=3, min_wait=0, max_wait=0)
        with pytest.raises(StageCancelled):
            await tool(harness.context, harness.progress)
        assert inner.calls == 1


# --- CloudJobTool ---


class FakeJobService:
    """Scripted responses for the cloud job endpoints."""

    def __init__(self, polls, submit_status=200):
        self.polls = list(polls)
        self.submit_status = submit_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/v1/jobs":
            if self.submit_status != 200:
                return httpx.Response(self.submit_status, text="unavailable")
            return httpx.Response(200, json={"id": "job-42"})
        if request.method == "GET" and request.url.path == "/v1/jobs/job-42":
            return httpx.Response(200, json=self.polls.pop(0))
        return httpx.Response(404)


def _cloud_tool(service):
    return CloudJobTool(
        "https://render.example.com/v1/",
        "secret",
        poll_interval=0,
        transport=httpx.MockTransport(service),
    )


class TestCloudJobTool:
    @pytest.mark.asyncio
    async def test_job_completes(self):
        service = FakeJobService(
            [
                {"status": "queued"},
                {"status": "running", "progress": 40, "message": "rendering scene 2/5"},
                {"status": "completed", "result": {"assets": ["a.png", "b.png"]}},
            ]
        )
        harness = Harness(stage=StageId.ASSET_GENERATION, previous="summary text")
        result = await _cloud_tool(service)(harness.context, harness.progress)

        assert result.success
        assert result.payload == {"assets": ["a.png", "b.png"]}
        assert harness.reports == [40.0]
        submit = json.loads(service.requests[0].content)
        assert submit["stage"] == "asset_generation"
        assert submit["previous"] == "summary text"
        assert "api_key" not in submit["options"]
        assert service.requests[0].headers["Authorization"] == "Bearer secret"
        assert (LogLevel.INFO, "Submitted Asset Generation job job-42") in harness.logs

    @pytest.mark.asyncio
    async def test_job_failed(self):
        service = FakeJobService([{"status": "failed", "error": "quota exceeded"}])
        harness = Harness(stage=StageId.ASSET_GENERATION)
        result = await _cloud_tool(service)(harness.context, harness.progress)
        assert not result.success
        assert result.error == "quota exceeded"

    @pytest.mark.asyncio
    async def test_server_error_is_retriable(self):
        service = FakeJobService([], submit_status=503)
        harness = Harness(stage=StageId.ASSET_GENERATION)
        with pytest.raises(StageToolError) as exc_info:
            await _cloud_tool(service)(harness.context, harness.progress)
        assert exc_info.value.retriable
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_cancelled_while_polling(self):
        service = FakeJobService([{"status": "queued"}] * 5)
        harness = Harness(stage=StageId.ASSET_GENERATION)
        harness.control.cancel()
        with pytest.raises(StageCancelled):
            await _cloud_tool(service)(harness.context, harness.progress)

    def test_endpoint_required(self):
        with pytest.raises(ValueError):
            CloudJobTool("", "secret")


# --- build_tools ---


def _command_settings(tmp_dir, **overrides):
    values = {
        f"{stage.value}_command": f"tool-{stage.value} {{input}}" for stage in STAGE_ORDER
    }
    values.update(overrides)
    return Settings(_env_file=None, output_dir=tmp_dir, **values)


class TestBuildTools:
    def test_local_backend(self, tmp_dir):
        tools = build_tools(_command_settings(tmp_dir))
        assert list(tools) == list(STAGE_ORDER)
        assert all(isinstance(t, CommandTool) for t in tools.values())
        assert tools[StageId.ASSEMBLY].output_dir == tmp_dir

    def test_cloud_backend(self, tmp_dir):
        settings = _command_settings(
            tmp_dir,
            video_backend="cloud",
            cloud_endpoint="https://render.example.com",
            api_key="secret",
            asset_generation_command="",
        )
        tools = build_tools(settings)
        asset_tool = tools[StageId.ASSET_GENERATION]
        assert isinstance(asset_tool, RetryingTool)
        assert isinstance(asset_tool.tool, CloudJobTool)
        assert asset_tool.attempts == settings.cloud_retry_attempts

    def test_missing_command(self, tmp_dir):
        settings = _command_settings(tmp_dir, diarization_command="")
        with pytest.raises(ConfigurationError) as exc_info:
            build_tools(settings)
        assert "CINESUM_DIARIZATION_COMMAND" in exc_info.value.message
