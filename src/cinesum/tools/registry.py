"""Builds the stage -> tool mapping from settings."""

import logging

from cinesum.config import Settings
from cinesum.models.errors import ConfigurationError
from cinesum.models.pipeline import STAGE_ORDER, StageId
from cinesum.pipeline.contract import StageTool
from cinesum.tools.cloud import CloudJobTool
from cinesum.tools.command import CommandTool
from cinesum.tools.retry import RetryingTool

logger = logging.getLogger(__name__)


def build_tools(settings: Settings) -> dict[StageId, StageTool]:
    """Create one tool per stage.

    Each stage runs its ``CINESUM_<STAGE>_COMMAND``. With the cloud video
    backend, asset generation goes to the cloud job service instead.
    """
    tools: dict[StageId, StageTool] = {}
    for stage in STAGE_ORDER:
        if stage == StageId.ASSET_GENERATION and settings.video_backend == "cloud":
            tools[stage] = RetryingTool(
                CloudJobTool(
                    settings.cloud_endpoint,
                    settings.api_key,
                    poll_interval=settings.cloud_poll_interval,
                ),
                attempts=settings.cloud_retry_attempts,
            )
            continue
        command = settings.stage_command(stage)
        if command:
            tools[stage] = CommandTool(command, output_dir=settings.output_dir)

    missing = [stage for stage in STAGE_ORDER if stage not in tools]
    if missing:
        names = ", ".join(f"CINESUM_{stage.value.upper()}_COMMAND" for stage in missing)
        raise ConfigurationError(
            f"No tool configured for stages: {', '.join(missing)} (set {names})",
            details={"missing": [str(s) for s in missing]},
        )
    logger.info("Configured tools: %s", {str(s): repr(t) for s, t in tools.items()})
    return tools
