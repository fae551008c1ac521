"""Stage tool that delegates work to a cloud job service over HTTP.

The service accepts ``POST /jobs`` and reports on ``GET /jobs/{id}`` with a
JSON body ``{"status": ..., "progress": 0-100, "result": ..., "error": ...}``.
Status values ``completed`` and ``failed`` are terminal.
"""

import asyncio
import logging

import httpx

from cinesum.models.errors import StageToolError
from cinesum.pipeline.contract import ProgressReporter, StageContext, StageResult
from cinesum.tools.base import BaseStageTool

logger = logging.getLogger(__name__)

_TERMINAL_OK = {"completed", "succeeded", "success"}
_TERMINAL_FAILED = {"failed", "error", "cancelled"}


class CloudJobTool(BaseStageTool):
    """Submits a stage job to the cloud endpoint and polls it to completion."""

    name = "cloud"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        poll_interval: float = 2.0,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not endpoint:
            raise ValueError("endpoint is required")
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.endpoint,
            headers={"Authorization": f"Bearer {self.api_key}"},
            follow_redirects=True,
            timeout=httpx.Timeout(self.timeout, connect=30.0),
            transport=self._transport,
        )

    async def run(self, context: StageContext, progress: ProgressReporter) -> StageResult:
        async with self._client() as client:
            job_id = await self.submit(client, context)
            context.log(f"Submitted {context.label} job {job_id}")
            while True:
                data = await self.poll(client, job_id)
                status = str(data.get("status", "unknown")).lower()
                if status in _TERMINAL_OK:
                    return StageResult.succeeded(data.get("result"))
                if status in _TERMINAL_FAILED:
                    return StageResult.failed(data.get("error") or f"cloud job {job_id} {status}")
                if "progress" in data and data["progress"] is not None:
                    progress(float(data["progress"]), data.get("message"))
                else:
                    context.checkpoint()
                await asyncio.sleep(self.poll_interval)

    async def submit(self, client: httpx.AsyncClient, context: StageContext) -> str:
        """Create the remote job and return its id."""
        body = {
            "stage": context.stage.value,
            "run_id": context.run_id,
            "input": context.media_input,
            "previous": _jsonable(context.previous),
            "options": context.options.template_values(),
        }
        logger.info("POST %s/jobs stage=%s run=%s", self.endpoint, context.stage, context.run_id)
        response = await client.post("/jobs", json=body)
        _raise_for_status(response)
        data = response.json()
        try:
            return str(data["id"])
        except (KeyError, TypeError):
            raise StageToolError("Cloud service returned no job id", component=self.name)

    async def poll(self, client: httpx.AsyncClient, job_id: str) -> dict:
        response = await client.get(f"/jobs/{job_id}")
        logger.debug("GET %s/jobs/%s -> HTTP %d", self.endpoint, job_id, response.status_code)
        _raise_for_status(response)
        return response.json()


def _raise_for_status(response: httpx.Response) -> None:
    """Translate HTTP errors; 429 and 5xx are transient."""
    if response.is_success:
        return
    code = response.status_code
    raise StageToolError(
        f"Cloud service returned HTTP {code}",
        component="cloud",
        retriable=code == 429 or code >= 500,
        details={"status_code": code, "body": response.text[:500]},
    )


def _jsonable(value):
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)
