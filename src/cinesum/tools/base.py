"""Base stage tool abstract class."""

from abc import ABC, abstractmethod
from typing import Any

from cinesum.pipeline.contract import ProgressReporter, StageContext, StageResult


class BaseStageTool(ABC):
    """Abstract base class for tools that perform a stage's work."""

    name: str = "tool"

    @abstractmethod
    async def run(self, context: StageContext, progress: ProgressReporter) -> StageResult:
        """Do the stage's work, reporting progress, and return its result."""
        ...

    async def __call__(self, context: StageContext, progress: ProgressReporter) -> Any:
        return await self.run(context, progress)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
