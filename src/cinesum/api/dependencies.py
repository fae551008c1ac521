"""Dependency injection providers for FastAPI."""

from functools import lru_cache

from cinesum.config import get_settings
from cinesum.pipeline.manager import PipelineOrchestrator


@lru_cache
def get_orchestrator() -> PipelineOrchestrator:
    """Process-wide orchestrator built from the environment settings."""
    return PipelineOrchestrator.from_settings(get_settings())
