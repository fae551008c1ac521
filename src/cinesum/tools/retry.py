"""Retry wrapper for stage tools.

Retries belong to the tool layer: the orchestrator runs each stage once and
treats whatever surfaces from the tool as final.
"""

import logging

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from cinesum.models.errors import StageFailure, StageToolError
from cinesum.models.pipeline import LogLevel
from cinesum.pipeline.contract import ProgressReporter, StageContext, StageResult, StageTool
from cinesum.tools.base import BaseStageTool

logger = logging.getLogger(__name__)


def is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying."""
    if isinstance(exc, StageFailure):
        # Cancellation and deadlines are final.
        return False
    if isinstance(exc, StageToolError):
        return exc.retriable
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


class RetryingTool(BaseStageTool):
    """Wraps a tool and re-invokes it on transient errors with exponential backoff."""

    def __init__(
        self,
        tool: StageTool,
        attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 30.0,
        multiplier: float = 1.0,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.tool = tool
        self.attempts = attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.multiplier = multiplier
        self.name = f"retrying({getattr(tool, 'name', type(tool).__name__)})"

    async def run(self, context: StageContext, progress: ProgressReporter) -> StageResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception(is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    context.checkpoint()
                    context.log(
                        f"Retrying {context.label} (attempt {number}/{self.attempts})",
                        LogLevel.WARN,
                    )
                return await self.tool(context, progress)
